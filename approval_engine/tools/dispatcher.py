import logging
from typing import Iterable
from approval_engine.models.intent import Intent, IntentType, NOTIFICATION_INTENTS, PURCHASE_INTENTS, SCHEDULE_INTENTS
from approval_engine.tools.notification_tool import notification_tool
from approval_engine.tools.purchase_sync import purchase_sync

logger = logging.getLogger(__name__)

SUBJECTS = {
    IntentType.NOTIFY_APPROVERS: "Approval needed: request {request_id}",
    IntentType.NOTIFY_REQUESTER: "Your approval request {request_id} was {status}",
    IntentType.NOTIFY_DELEGATE: "Approval delegated to you: request {request_id}",
    IntentType.NOTIFY_ESCALATION: "[ESCALATION] Approval request {request_id}",
    IntentType.NOTIFY_CANCELLATION: "Approval request {request_id} cancelled",
    IntentType.SEND_REMINDER: "Reminder: request {request_id} awaits your decision",
}

URGENT_LEVELS = {"high", "critical"}

class IntentDispatcher:
    """
    Fire-and-forget execution of engine intents. A failing intent is logged
    and never reaches the caller: the approval decision already stands.
    """

    def __init__(self, notifier=None, purchases=None):
        self.notifier = notifier or notification_tool
        self.purchases = purchases or purchase_sync

    async def dispatch(self, intents: Iterable[Intent]) -> int:
        """Returns the number of intents that failed."""
        failures = 0
        for intent in intents:
            try:
                await self._dispatch_one(intent)
            except Exception as e:
                failures += 1
                logger.error(f"Intent {intent.type.value} for {intent.request_id} failed: {e}")
        return failures

    async def _dispatch_one(self, intent: Intent):
        if intent.type in NOTIFICATION_INTENTS:
            if not intent.target_user_ids:
                logger.debug(f"No recipients for {intent.type.value} on {intent.request_id}")
                return
            await self.notifier.send_notification(
                users=intent.target_user_ids,
                subject=self.subject_for(intent),
                message=self.message_for(intent),
                channels=self.channels_for(intent)
            )
        elif intent.type in PURCHASE_INTENTS:
            await self.purchases.apply(intent)
        elif intent.type in SCHEDULE_INTENTS:
            # Timing lives on the request; the periodic sweep acts on it
            logger.info(f"{intent.type.value} for {intent.request_id}: {intent.payload}")
        else:
            logger.warning(f"Unhandled intent type {intent.type}")

    @staticmethod
    def subject_for(intent: Intent) -> str:
        template = SUBJECTS.get(intent.type, "Approval request {request_id}")
        return template.format(request_id=intent.request_id, status=intent.payload.get("status", "updated"))

    @staticmethod
    def message_for(intent: Intent) -> str:
        payload = intent.payload
        parts = []
        if payload.get("purpose"):
            parts.append(f"Purpose: {payload['purpose']}")
        if payload.get("amount") is not None:
            parts.append(f"Amount: {payload['amount']} {payload.get('currency', '')}".strip())
        if payload.get("reason"):
            parts.append(f"Reason: {payload['reason']}")
        if payload.get("deadline"):
            parts.append(f"Decide before: {payload['deadline']}")
        return ". ".join(parts) or f"Approval request {intent.request_id} updated"

    @staticmethod
    def channels_for(intent: Intent):
        if intent.type == IntentType.NOTIFY_ESCALATION or intent.payload.get("urgency") in URGENT_LEVELS:
            return ["email", "in_app", "sms"]
        return ["email", "in_app"]

intent_dispatcher = IntentDispatcher()
