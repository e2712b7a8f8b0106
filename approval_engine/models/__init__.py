from approval_engine.models.base import EmbeddedModel, MongoModel
from approval_engine.models.approval import ApprovalRequest, ApprovalStep, ApprovalRules, Communication, Decision, EscalationEntry, FinalStatus, Financials, Justification, Outcome, StepStatus, Timeline, Urgency
from approval_engine.models.config import CompanyPolicy
from approval_engine.models.directory import DirectoryUser, Role, UserType
from approval_engine.models.intent import Intent, IntentType
