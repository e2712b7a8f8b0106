import logging
from datetime import datetime
from typing import Dict, Optional
from approval_engine.database import db
from approval_engine.models.approval import ApprovalRequest, Outcome
from approval_engine.engine.deadlines import deadline_calculator
from approval_engine.engine.coordinator import request_coordinator
from approval_engine.exceptions import ApprovalError

logger = logging.getLogger(__name__)

class SLAMonitor:
    """
    Periodic sweep over pending approval requests: expires the overdue ones,
    escalates the stalled ones and reminds the rest on their urgency schedule.
    """

    def __init__(self, coordinator=None, store=None, deadlines=None):
        self.coordinator = coordinator or request_coordinator
        self._store = store
        self.deadlines = deadlines or deadline_calculator

    @property
    def store(self):
        return self._store or db.approvals

    async def expire_overdue(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        counts = {"expired": 0, "errors": 0}

        for request in await self.store.find_overdue(now):
            try:
                transition = await self.coordinator.expire(request.request_id, now=now)
                if transition.outcome == Outcome.EXPIRED:
                    counts["expired"] += 1
            except ApprovalError as e:
                counts["errors"] += 1
                logger.error(f"Expiry of {request.request_id} failed: {e.message}")

        return counts

    async def process_reminders(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Escalates requests whose level has waited past the escalation delay,
        otherwise sends the next due reminder.
        """
        now = now or datetime.utcnow()
        counts = {"escalated": 0, "reminded": 0, "errors": 0}
        for request in await self.store.find_pending():
            try:
                action = self.next_action(request, now)
                if action == "escalate":
                    transition = await self.coordinator.escalate(request.request_id, trigger="timeout", now=now)
                    if transition.outcome == Outcome.ESCALATED:
                        counts["escalated"] += 1
                elif action == "remind":
                    transition = await self.coordinator.record_reminder(request.request_id, now=now)
                    if transition.outcome == Outcome.REMINDED:
                        counts["reminded"] += 1
            except ApprovalError as e:
                counts["errors"] += 1
                logger.error(f"Follow-up on {request.request_id} failed: {e.message}")

        return counts

    def next_action(self, request: ApprovalRequest, now: datetime) -> Optional[str]:
        steps = request.pending_current_steps()
        if request.is_terminal or not steps:
            return None

        since = request.escalation.escalated_at or request.timeline.created_at
        waited_hours = (now - since).total_seconds() / 3600

        # Already sitting with the escalation target; reminders only
        already_escalated = any(step.escalated for step in steps)
        if not already_escalated and waited_hours >= request.rules.auto_escalation_delay_hours:
            return "escalate"

        offsets = self.deadlines.compute_reminder_offsets(request.justification.urgency)
        sent = max(step.reminder_count for step in steps)
        if sent < len(offsets) and waited_hours >= offsets[sent]:
            return "remind"
        return None

    async def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        logger.info(f"Approval sweep started at {now}")

        counts = await self.expire_overdue(now)
        follow_up = await self.process_reminders(now)
        counts["errors"] += follow_up.pop("errors")
        counts.update(follow_up)

        logger.info(f"Approval sweep complete: {counts}")
        return counts

sla_monitor = SLAMonitor()
