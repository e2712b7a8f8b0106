import logging
from datetime import datetime
from typing import Any, Dict
from approval_engine.database import db
from approval_engine.models.intent import Intent, IntentType

logger = logging.getLogger(__name__)

BOOKING_STATUS = {
    IntentType.MARK_PURCHASE_PENDING: "pending_approval",
    IntentType.CONFIRM_PURCHASE: "confirmed",
    IntentType.CANCEL_PURCHASE: "cancelled",
}

class PurchaseSync:
    """
    Mirrors approval outcomes onto the gated booking document.
    """

    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else db.db["bookings"]

    async def apply(self, intent: Intent):
        status = BOOKING_STATUS.get(intent.type)
        if status is None:
            raise ValueError(f"Not a purchase intent: {intent.type}")

        payload = intent.payload
        update: Dict[str, Any] = {"status": status, "approval_request_id": intent.request_id}
        if intent.type == IntentType.MARK_PURCHASE_PENDING:
            update["approval_required_by"] = payload.get("deadline")
        elif intent.type == IntentType.CONFIRM_PURCHASE:
            update["approved_by"] = payload.get("approved_by")
            update["approved_at"] = datetime.utcnow()
            update["final_amount"] = payload.get("final_amount")
        else:
            update["cancellation_reason"] = payload.get("reason")
            update["cancelled_by"] = payload.get("cancelled_by")
            update["cancelled_at"] = datetime.utcnow()

        result = await self.collection.update_one(
            {"booking_id": payload["purchase_ref_id"]},
            {"$set": update}
        )
        if result.matched_count == 0:
            logger.warning(f"Booking {payload['purchase_ref_id']} not found for {intent.type.value}")
        else:
            logger.info(f"Booking {payload['purchase_ref_id']} -> {status}")

purchase_sync = PurchaseSync()
