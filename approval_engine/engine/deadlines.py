from datetime import datetime, timedelta
from typing import List, Optional
from approval_engine.config import settings

DEADLINE_HOURS = {"low": 48, "medium": 24, "high": 12, "critical": 6}
SLA_HOURS = {"low": 48, "medium": 24, "high": 8, "critical": 4}
ESCALATION_DELAY_HOURS = {"low": 48, "medium": 24, "high": 12, "critical": 4}
REMINDER_OFFSETS_HOURS = {"low": [24, 48], "medium": [12, 24], "high": [6, 12], "critical": [2, 4]}
HOURS_PER_LEVEL = {"low": 12, "medium": 8, "high": 4, "critical": 2}

class DeadlineCalculator:
    """
    Urgency driven SLA arithmetic. All methods are pure given ``now``.
    """

    def __init__(self, blackout_hours: Optional[int] = None):
        self.blackout_hours = settings.TRAVEL_BLACKOUT_HOURS if blackout_hours is None else blackout_hours

    def compute_deadline(self, travel_date: Optional[datetime], urgency: str,
                         company_default_hours: Optional[int] = None,
                         now: Optional[datetime] = None) -> datetime:
        """
        now + urgency hours, never later than travel_date minus the blackout window.
        """
        now = now or datetime.utcnow()
        default_hours = company_default_hours or settings.DEFAULT_APPROVAL_DEADLINE_HOURS
        deadline = now + timedelta(hours=DEADLINE_HOURS.get(urgency, default_hours))

        if travel_date is None:
            return deadline
        travel_limit = travel_date - timedelta(hours=self.blackout_hours)
        return min(deadline, travel_limit)

    def compute_sla(self, urgency: str) -> int:
        return SLA_HOURS.get(urgency, 24)

    def compute_escalation_delay(self, urgency: str) -> int:
        return ESCALATION_DELAY_HOURS.get(urgency, 24)

    def compute_reminder_offsets(self, urgency: str) -> List[int]:
        return list(REMINDER_OFFSETS_HOURS.get(urgency, REMINDER_OFFSETS_HOURS["medium"]))

    def estimate_approval_hours(self, levels: int, urgency: str) -> int:
        return levels * HOURS_PER_LEVEL.get(urgency, 8)

deadline_calculator = DeadlineCalculator()
