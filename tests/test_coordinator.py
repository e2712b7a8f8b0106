import sys
import os
sys.path.append(os.getcwd())
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock
from approval_engine.engine.coordinator import PurchaseDraft, SubmissionJustification
from approval_engine.models.approval import FinalStatus, Outcome
from approval_engine.models.intent import IntentType
from approval_engine.exceptions import AlreadyResolved, NotAuthorized, NotFound, VersionConflict

def draft(amount=5000.0, travel_in_hours=None, now=None, ref="BK-1"):
    travel_date = now + timedelta(hours=travel_in_hours) if travel_in_hours else None
    return PurchaseDraft(purchase_ref_id=ref, amount=amount, travel_date=travel_date,
                         base_amount=amount * 0.8, tax_amount=amount * 0.2)

def why(urgency="medium"):
    return SubmissionJustification(purpose="Customer kickoff", urgency=urgency, cost_center="CC-42")

# ===== submit =====

@pytest.mark.asyncio
async def test_submit_below_limit_needs_no_approval(coordinator, store, dispatcher, now):
    result = await coordinator.submit(draft(200, now=now), "employee", why(), now=now)
    assert result.requires_approval is False
    assert result.request_id is None
    assert store.docs == {}
    assert dispatcher.intents == []

@pytest.mark.asyncio
async def test_submit_creates_request(coordinator, store, dispatcher, now):
    result = await coordinator.submit(draft(5000, now=now), "employee", why(), now=now)

    assert result.requires_approval is True
    assert result.request_id.startswith("APR-")
    assert result.first_approvers == ["director"]
    assert result.deadline == now + timedelta(hours=24)
    assert result.estimated_hours == 8

    request = await store.load(result.request_id)
    assert request.version == 1
    assert request.purchase_ref_id == "BK-1"
    assert request.financials.cost_center == "CC-42"
    assert request.financials.breakdown.taxes == pytest.approx(1000.0)
    assert request.rules.auto_escalation_delay_hours == 24
    assert request.rules.require_consensus is False
    assert request.timeline.sla_target_hours == 24

    assert dispatcher.types() == [
        IntentType.NOTIFY_APPROVERS,
        IntentType.SCHEDULE_REMINDERS,
        IntentType.SCHEDULE_ESCALATION,
        IntentType.MARK_PURCHASE_PENDING,
    ]
    assert dispatcher.intents[1].payload["offsets_hours"] == [12, 24]

@pytest.mark.asyncio
async def test_submit_high_value_critical(coordinator, store, now):
    result = await coordinator.submit(draft(25000, travel_in_hours=72, now=now), "employee", why("critical"), now=now)

    request = await store.load(result.request_id)
    assert [s.approver_id for s in request.chain] == ["vp", "ceo"]
    assert request.rules.parallel_approval_allowed is True
    assert request.rules.require_consensus is True
    assert request.metadata.flags.is_urgent is True
    assert request.metadata.flags.requires_special_approval is True
    assert result.deadline == now + timedelta(hours=6)

@pytest.mark.asyncio
async def test_submit_deadline_capped_by_travel(coordinator, now):
    result = await coordinator.submit(draft(5000, travel_in_hours=30, now=now), "employee", why("low"), now=now)
    assert result.deadline == now + timedelta(hours=6)

@pytest.mark.asyncio
async def test_submit_unknown_requester(coordinator, now):
    with pytest.raises(NotFound):
        await coordinator.submit(draft(now=now), "ghost", why(), now=now)

@pytest.mark.asyncio
async def test_submit_without_policy_fails_closed(coordinator, now):
    coordinator._policies.policies.clear()
    result = await coordinator.submit(draft(50, now=now), "employee", why(), now=now)
    assert result.requires_approval is True

# ===== transitions =====

@pytest.mark.asyncio
async def test_final_approval_dispatches_and_updates_stats(coordinator, dispatcher, stats, now):
    result = await coordinator.submit(draft(5000, now=now), "employee", why(), now=now)
    dispatcher.intents.clear()

    transition = await coordinator.decide(result.request_id, "director", "approve", now=now)

    assert transition.outcome == Outcome.APPROVED_FINAL
    assert dispatcher.types() == [IntentType.NOTIFY_REQUESTER, IntentType.CONFIRM_PURCHASE]
    stats.record_outcome.assert_awaited_once()

@pytest.mark.asyncio
async def test_stats_failure_does_not_fail_decision(coordinator, stats, now):
    stats.record_outcome.side_effect = RuntimeError("stats down")
    result = await coordinator.submit(draft(5000, now=now), "employee", why(), now=now)
    transition = await coordinator.decide(result.request_id, "director", "reject", now=now)
    assert transition.request.final_status == FinalStatus.REJECTED

@pytest.mark.asyncio
async def test_partial_approval_skips_stats(coordinator, stats, now):
    result = await coordinator.submit(draft(15000, now=now), "employee", why(), now=now)
    transition = await coordinator.decide(result.request_id, "director", "approve", now=now)
    assert transition.outcome == Outcome.APPROVED_PARTIAL
    stats.record_outcome.assert_not_awaited()

@pytest.mark.asyncio
async def test_conflict_retry_succeeds(coordinator, machine, now):
    result = await coordinator.submit(draft(5000, now=now), "employee", why(), now=now)
    real_decide = machine.decide
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise VersionConflict(result.request_id, 1)
        return await real_decide(*args, **kwargs)

    machine.decide = flaky
    transition = await coordinator.decide(result.request_id, "director", "approve", now=now)
    assert transition.outcome == Outcome.APPROVED_FINAL
    assert len(calls) == 2

@pytest.mark.asyncio
async def test_conflict_gives_up_after_attempts(coordinator, machine, dispatcher, now):
    result = await coordinator.submit(draft(5000, now=now), "employee", why(), now=now)
    dispatcher.intents.clear()
    machine.decide = AsyncMock(side_effect=VersionConflict(result.request_id, 1))

    with pytest.raises(VersionConflict):
        await coordinator.decide(result.request_id, "director", "approve", now=now)
    assert machine.decide.await_count == 3
    assert dispatcher.intents == []

@pytest.mark.asyncio
async def test_manual_escalation_requires_permission(coordinator, now):
    result = await coordinator.submit(draft(5000, now=now), "employee", why(), now=now)
    with pytest.raises(NotAuthorized):
        await coordinator.escalate(result.request_id, actor_id="employee", now=now)

    transition = await coordinator.escalate(result.request_id, actor_id="vp", now=now)
    assert transition.outcome == Outcome.ESCALATED
    assert transition.request.escalation.history[0].reason == "manual"

@pytest.mark.asyncio
async def test_cancel_then_decide(coordinator, dispatcher, now):
    result = await coordinator.submit(draft(5000, now=now), "employee", why(), now=now)
    await coordinator.cancel(result.request_id, "employee", "Plans changed", now=now)
    assert IntentType.CANCEL_PURCHASE in dispatcher.types()
    with pytest.raises(AlreadyResolved):
        await coordinator.decide(result.request_id, "director", "approve", now=now)

# ===== reads =====

@pytest.mark.asyncio
async def test_list_pending_for(coordinator, now):
    first = await coordinator.submit(draft(5000, now=now, ref="BK-1"), "employee", why(), now=now)
    await coordinator.submit(draft(15000, now=now, ref="BK-2"), "employee", why("high"),
                             now=now + timedelta(minutes=5))
    await coordinator.delegate(first.request_id, "director", "finance", now=now)

    page = await coordinator.list_pending_for("director", now=now + timedelta(hours=1))
    assert page.summary == {"total": 1, "overdue": 0, "urgent": 1}
    item = page.approvals[0]
    assert item.amount == 15000
    assert item.can_decide is True
    assert item.user_level == 1
    assert item.hours_remaining == 11
    assert page.pagination["total_items"] == 1

    delegated = await coordinator.list_pending_for("finance", now=now)
    assert [a.request_id for a in delegated.approvals] == [first.request_id]

    vp_view = await coordinator.list_pending_for("vp", now=now)
    assert vp_view.approvals[0].can_decide is False
    assert vp_view.approvals[0].user_level == 2

@pytest.mark.asyncio
async def test_list_pending_pagination_and_filters(coordinator, now):
    for i in range(3):
        await coordinator.submit(draft(5000 + i, now=now, ref=f"BK-{i}"), "employee", why(),
                                 now=now + timedelta(minutes=i))

    page = await coordinator.list_pending_for("director", {"page": 2, "limit": 2}, now=now)
    assert page.pagination == {"current_page": 2, "total_pages": 2, "total_items": 3, "items_per_page": 2}
    assert len(page.approvals) == 1

    filtered = await coordinator.list_pending_for("director", {"min_amount": 5001}, now=now)
    assert filtered.summary["total"] == 2

    overdue = await coordinator.list_pending_for("director", now=now + timedelta(days=2))
    assert overdue.summary["overdue"] == 3
    assert all(a.hours_remaining == 0 for a in overdue.approvals)

@pytest.mark.asyncio
async def test_history_is_chronological(coordinator, now):
    result = await coordinator.submit(draft(15000, now=now), "employee", why(), now=now)
    await coordinator.decide(result.request_id, "director", "approve", "ok", now=now + timedelta(hours=1))
    await coordinator.escalate(result.request_id, now=now + timedelta(hours=2))
    await coordinator.decide(result.request_id, "ceo", "approve", now=now + timedelta(hours=3))

    history = await coordinator.history(result.request_id)

    times = [e.at for e in history.timeline]
    assert times == sorted(times)
    assert history.timeline[0].type == "created"
    kinds = [e.type for e in history.timeline]
    assert kinds.count("approved") == 2
    assert "escalation" in kinds
    assert history.summary["status"] == "approved"
