import sys
import os
sys.path.append(os.getcwd())
import pytest
from datetime import datetime, timedelta
from approval_engine.engine.deadlines import DeadlineCalculator

NOW = datetime(2026, 3, 2, 9, 0, 0)

@pytest.fixture
def calculator():
    return DeadlineCalculator(blackout_hours=24)

@pytest.mark.parametrize("urgency,hours", [("low", 48), ("medium", 24), ("high", 12), ("critical", 6)])
def test_deadline_by_urgency(calculator, urgency, hours):
    assert calculator.compute_deadline(None, urgency, now=NOW) == NOW + timedelta(hours=hours)

def test_deadline_capped_by_travel_date(calculator):
    travel = NOW + timedelta(hours=30)
    # now + 48h would land after check-in; cap at travel - 24h
    assert calculator.compute_deadline(travel, "low", now=NOW) == NOW + timedelta(hours=6)

@pytest.mark.parametrize("urgency", ["low", "medium", "high", "critical"])
@pytest.mark.parametrize("travel_in_hours", [25, 30, 40, 100])
def test_deadline_never_after_blackout(calculator, urgency, travel_in_hours):
    travel = NOW + timedelta(hours=travel_in_hours)
    assert calculator.compute_deadline(travel, urgency, now=NOW) <= travel - timedelta(hours=24)

def test_deadline_not_extended_by_far_travel(calculator):
    travel = NOW + timedelta(days=30)
    assert calculator.compute_deadline(travel, "high", now=NOW) == NOW + timedelta(hours=12)

def test_deadline_can_already_be_past(calculator):
    travel = NOW + timedelta(hours=10)
    assert calculator.compute_deadline(travel, "medium", now=NOW) < NOW

def test_unknown_urgency_uses_company_default(calculator):
    assert calculator.compute_deadline(None, "whenever", company_default_hours=36, now=NOW) == NOW + timedelta(hours=36)

def test_deadline_never_later_for_more_urgent(calculator):
    travel = NOW + timedelta(days=3)
    deadlines = [calculator.compute_deadline(travel, u, now=NOW) for u in ("low", "medium", "high", "critical")]
    assert deadlines == sorted(deadlines, reverse=True)

def test_sla_and_escalation_tables(calculator):
    assert calculator.compute_sla("critical") == 4
    assert calculator.compute_sla("unknown") == 24
    assert calculator.compute_escalation_delay("high") == 12
    assert calculator.compute_escalation_delay("low") == 48

def test_reminder_offsets_are_copies(calculator):
    offsets = calculator.compute_reminder_offsets("critical")
    assert offsets == [2, 4]
    offsets.append(99)
    assert calculator.compute_reminder_offsets("critical") == [2, 4]
    assert calculator.compute_reminder_offsets("other") == [12, 24]

def test_estimate_approval_hours(calculator):
    assert calculator.estimate_approval_hours(3, "medium") == 24
    assert calculator.estimate_approval_hours(2, "critical") == 4
