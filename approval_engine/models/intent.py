from enum import Enum
from typing import Any, Dict, List
from pydantic import BaseModel, Field

class IntentType(str, Enum):
    NOTIFY_APPROVERS = "notify_approvers"
    NOTIFY_REQUESTER = "notify_requester"
    NOTIFY_DELEGATE = "notify_delegate"
    NOTIFY_ESCALATION = "notify_escalation"
    NOTIFY_CANCELLATION = "notify_cancellation"
    SEND_REMINDER = "send_reminder"
    SCHEDULE_REMINDERS = "schedule_reminders"
    SCHEDULE_ESCALATION = "schedule_escalation"
    MARK_PURCHASE_PENDING = "mark_purchase_pending"
    CONFIRM_PURCHASE = "confirm_purchase"
    CANCEL_PURCHASE = "cancel_purchase"

NOTIFICATION_INTENTS = {
    IntentType.NOTIFY_APPROVERS,
    IntentType.NOTIFY_REQUESTER,
    IntentType.NOTIFY_DELEGATE,
    IntentType.NOTIFY_ESCALATION,
    IntentType.NOTIFY_CANCELLATION,
    IntentType.SEND_REMINDER,
}

PURCHASE_INTENTS = {
    IntentType.MARK_PURCHASE_PENDING,
    IntentType.CONFIRM_PURCHASE,
    IntentType.CANCEL_PURCHASE,
}

SCHEDULE_INTENTS = {
    IntentType.SCHEDULE_REMINDERS,
    IntentType.SCHEDULE_ESCALATION,
}

class Intent(BaseModel):
    """A side effect the engine wants an external collaborator to carry out."""
    type: IntentType
    request_id: str
    target_user_ids: List[str] = []
    payload: Dict[str, Any] = Field(default_factory=dict)
