from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any
from pydantic import Field
from approval_engine.models.base import EmbeddedModel, MongoModel

class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class FinalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped" # superseded by an escalation

class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

class Outcome(str, Enum):
    """Externally visible result of a transition."""
    PENDING = "pending"
    APPROVED_PARTIAL = "approved_partial"
    APPROVED_FINAL = "approved_final"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    DELEGATED = "delegated"
    ESCALATED = "escalated"
    REMINDED = "reminded"
    NO_OP = "no_op"

TERMINAL_TIMESTAMP_FIELDS = {
    FinalStatus.APPROVED: "approved_at",
    FinalStatus.REJECTED: "rejected_at",
    FinalStatus.CANCELLED: "cancelled_at",
    FinalStatus.EXPIRED: "expired_at",
}

class ApprovalStep(EmbeddedModel):
    """One approver's slot in the chain. Never addressed outside its request."""
    approver_id: str
    level: int = Field(..., ge=1)
    status: StepStatus = StepStatus.PENDING
    urgency: Urgency = Urgency.MEDIUM

    delegated_to_id: Optional[str] = None
    delegated_at: Optional[datetime] = None

    # Critical last-resort member added below its approval limit
    limit_waived: bool = False
    escalated: bool = False

    assigned_at: datetime = Field(default_factory=datetime.utcnow)
    notified_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    comments: Optional[str] = Field(None, max_length=1000)

    reminder_count: int = 0
    last_reminder_at: Optional[datetime] = None

    @property
    def decider_id(self) -> str:
        """The user currently entitled to decide this step."""
        return self.delegated_to_id or self.approver_id

    @property
    def is_pending(self) -> bool:
        return self.status == StepStatus.PENDING

class Justification(EmbeddedModel):
    purpose: str = Field(..., max_length=500)
    urgency: Urgency = Urgency.MEDIUM
    expected_benefit: Optional[str] = Field(None, max_length=1000)
    urgency_reason: Optional[str] = Field(None, max_length=500)
    client_name: Optional[str] = None
    project_name: Optional[str] = None
    alternatives_considered: Optional[str] = Field(None, max_length=1000)
    impact_if_rejected: Optional[str] = Field(None, max_length=1000)

class CostBreakdown(EmbeddedModel):
    accommodation: float = 0.0
    taxes: float = 0.0
    extras: float = 0.0
    fees: float = 0.0

class Financials(EmbeddedModel):
    amount: float = Field(..., ge=0)
    currency: str = "EUR"
    budget_code: Optional[str] = Field(None, max_length=50)
    cost_center: Optional[str] = Field(None, max_length=50)
    project_code: Optional[str] = Field(None, max_length=50)
    available_budget: Optional[float] = Field(None, ge=0)
    breakdown: CostBreakdown = Field(default_factory=CostBreakdown)

class Timeline(EmbeddedModel):
    created_at: datetime = Field(default_factory=datetime.utcnow)
    required_by: datetime
    sla_target_hours: int = 24
    first_notification_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    processing_time_minutes: Optional[int] = None
    sla_compliant: Optional[bool] = None

class ApprovalRules(EmbeddedModel):
    allow_auto_approval: bool = False
    auto_approval_threshold: float = 0.0
    parallel_approval_allowed: bool = False
    auto_escalation_delay_hours: int = 24
    # Stored for reporting only; progression stays an OR-gate
    require_consensus: bool = False

class EscalationEntry(EmbeddedModel):
    level: int
    reason: str
    escalated_to: Optional[str] = None
    escalated_at: datetime = Field(default_factory=datetime.utcnow)

class EscalationState(EmbeddedModel):
    is_escalated: bool = False
    escalated_to: Optional[str] = None
    escalated_at: Optional[datetime] = None
    escalation_level: int = 0
    history: List[EscalationEntry] = []

class Communication(EmbeddedModel):
    """Audit record of a notable actor-to-actor message, not a delivery."""
    channel: str = "in_app"
    direction: str = "inbound"
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    subject: str
    content: Optional[str] = Field(None, max_length=2000)
    sent_at: datetime = Field(default_factory=datetime.utcnow)

class RequestFlags(EmbeddedModel):
    is_urgent: bool = False
    requires_special_approval: bool = False

class RequestMetadata(EmbeddedModel):
    source: str = "web"
    flags: RequestFlags = Field(default_factory=RequestFlags)

class ApprovalRequest(MongoModel):
    """
    Approval request aggregate: the chain, its progress and its audit trail.
    Only the state machine mutates it once persisted.
    """
    request_id: str = Field(..., description="Unique request ID (APR-...)")
    requester_id: str
    company_id: str
    purchase_ref_id: str = Field(..., description="Booking the approval gates")

    chain: List[ApprovalStep] = []
    current_level: int = Field(1, ge=1)
    final_status: FinalStatus = FinalStatus.PENDING

    justification: Justification
    financials: Financials
    timeline: Timeline
    rules: ApprovalRules = Field(default_factory=ApprovalRules)
    escalation: EscalationState = Field(default_factory=EscalationState)
    communications: List[Communication] = []
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)

    version: int = 0

    @property
    def amount(self) -> float:
        return self.financials.amount

    @property
    def is_terminal(self) -> bool:
        return self.final_status != FinalStatus.PENDING

    def steps_at(self, level: int) -> List[ApprovalStep]:
        return [step for step in self.chain if step.level == level]

    def current_steps(self) -> List[ApprovalStep]:
        return self.steps_at(self.current_level)

    def pending_current_steps(self) -> List[ApprovalStep]:
        return [step for step in self.current_steps() if step.is_pending]

    def next_pending_level(self) -> Optional[int]:
        """Lowest level above current_level that still has a pending step."""
        levels = sorted({s.level for s in self.chain if s.is_pending and s.level > self.current_level})
        return levels[0] if levels else None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.timeline.required_by < now

    def hours_remaining(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        remaining = (self.timeline.required_by - now).total_seconds() / 3600
        return max(0, int(remaining))

    def progress_percentage(self) -> int:
        if self.final_status == FinalStatus.APPROVED:
            return 100
        if self.final_status in (FinalStatus.REJECTED, FinalStatus.CANCELLED):
            return 0
        if not self.chain:
            return 0
        done = sum(1 for s in self.chain if s.status in (StepStatus.APPROVED, StepStatus.SKIPPED))
        return int(done * 100 / len(self.chain))

    def add_communication(self, subject: str, content: Optional[str] = None,
                          from_user_id: Optional[str] = None, to_user_id: Optional[str] = None,
                          direction: str = "inbound", channel: str = "in_app",
                          at: Optional[datetime] = None):
        self.communications.append(Communication(
            channel=channel,
            direction=direction,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            subject=subject,
            content=content,
            sent_at=at or datetime.utcnow()
        ))

    def summary(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "purpose": self.justification.purpose,
            "amount": self.financials.amount,
            "currency": self.financials.currency,
            "requester_id": self.requester_id,
            "status": self.final_status,
            "current_level": self.current_level,
            "total_levels": len({s.level for s in self.chain}),
            "progress": self.progress_percentage(),
            "created_at": self.timeline.created_at,
            "required_by": self.timeline.required_by,
        }
