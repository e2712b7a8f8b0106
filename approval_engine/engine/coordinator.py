import logging
import math
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from approval_engine.config import settings
from approval_engine.database import db
from approval_engine.models.approval import (
    ApprovalRequest, ApprovalRules, CostBreakdown, Financials, FinalStatus, Justification,
    Outcome, RequestFlags, RequestMetadata, StepStatus, Timeline, Urgency,
)
from approval_engine.models.intent import Intent, IntentType
from approval_engine.engine.policy import policy_evaluator
from approval_engine.engine.chain_builder import chain_builder
from approval_engine.engine.deadlines import deadline_calculator
from approval_engine.engine.state_machine import approval_state_machine, Transition
from approval_engine.guardrails.permissions import permission_checker
from approval_engine.tools.dispatcher import intent_dispatcher
from approval_engine.monitoring.metrics import approval_metrics
from approval_engine.exceptions import NotFound, VersionConflict

logger = logging.getLogger(__name__)

class PurchaseDraft(BaseModel):
    """The pending booking an approval request gates."""
    purchase_ref_id: str
    amount: float = Field(..., ge=0)
    currency: str = "EUR"
    travel_date: Optional[datetime] = None
    base_amount: float = 0.0
    tax_amount: float = 0.0
    extras_amount: float = 0.0
    fees_amount: float = 0.0
    source: str = "web"

class SubmissionJustification(Justification):
    budget_code: Optional[str] = None
    cost_center: Optional[str] = None
    project_code: Optional[str] = None
    available_budget: Optional[float] = None

class SubmitResult(BaseModel):
    requires_approval: bool
    reason: str
    request_id: Optional[str] = None
    first_approvers: List[str] = []
    deadline: Optional[datetime] = None
    estimated_hours: Optional[int] = None

class PendingApproval(BaseModel):
    request_id: str
    requester_id: str
    purchase_ref_id: str
    amount: float
    currency: str
    urgency: str
    purpose: str
    current_level: int
    user_level: Optional[int] = None
    can_decide: bool
    is_overdue: bool
    hours_remaining: int
    progress_percentage: int
    required_by: datetime

class PendingPage(BaseModel):
    approvals: List[PendingApproval]
    pagination: Dict[str, int]
    summary: Dict[str, int]

class HistoryEntry(BaseModel):
    at: datetime
    type: str
    action: str
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    details: Optional[str] = None
    level: Optional[int] = None

class RequestHistory(BaseModel):
    summary: Dict[str, Any]
    timeline: List[HistoryEntry]

class RequestCoordinator:
    """
    Public entry point: gates, builds and creates requests, forwards later
    transitions to the state machine and hands the resulting intents to the
    dispatcher once the write has landed.
    """

    def __init__(self, state_machine=None, directory=None, policies=None, store=None,
                 policy=None, chains=None, deadlines=None, dispatcher=None, stats=None,
                 retry_attempts: Optional[int] = None):
        self.state_machine = state_machine or approval_state_machine
        self._directory = directory
        self._policies = policies
        self._store = store
        self.policy = policy or policy_evaluator
        self.chains = chains or chain_builder
        self.deadlines = deadlines or deadline_calculator
        self.dispatcher = dispatcher or intent_dispatcher
        self.stats = stats or approval_metrics
        self.retry_attempts = retry_attempts or settings.WRITE_RETRY_ATTEMPTS

    @property
    def directory(self):
        return self._directory or db.directory

    @property
    def policies(self):
        return self._policies or db.policies

    @property
    def store(self):
        return self._store or db.approvals

    # ===== Submission =====

    async def submit(self, draft: PurchaseDraft, requester_id: str,
                     justification: SubmissionJustification,
                     now: Optional[datetime] = None) -> SubmitResult:
        now = now or datetime.utcnow()
        logger.info(f"Approval submission for {draft.purchase_ref_id} by {requester_id}")

        requester = await self.directory.get_user(requester_id)
        if requester is None:
            raise NotFound(f"Requester {requester_id} not found")

        policy = None
        if requester.company_id:
            policy = await self.policies.get_by_company_id(requester.company_id)

        gate = self.policy.should_require_approval(policy, draft.amount, requester)
        if not gate.required:
            logger.info(f"No approval required for {draft.purchase_ref_id}: {gate.reason}")
            return SubmitResult(requires_approval=False, reason=gate.reason)

        urgency = justification.urgency
        chain = await self.chains.build_chain(requester, draft.amount, urgency)
        deadline = self.deadlines.compute_deadline(
            draft.travel_date, urgency,
            policy.approval_deadline_hours if policy else None,
            now=now
        )
        if deadline <= now:
            logger.warning(f"{draft.purchase_ref_id}: deadline {deadline} already passed at submission")

        request = self._build_request(draft, requester, justification, chain, deadline, policy, now)
        transition = await self.state_machine.create(request, now=now)

        delay = request.rules.auto_escalation_delay_hours
        offsets = self.deadlines.compute_reminder_offsets(urgency)
        intents = list(transition.intents) + [
            Intent(type=IntentType.SCHEDULE_REMINDERS, request_id=request.request_id,
                   payload={"offsets_hours": offsets, "from": now}),
            Intent(type=IntentType.SCHEDULE_ESCALATION, request_id=request.request_id,
                   payload={"delay_hours": delay, "from": now}),
            Intent(type=IntentType.MARK_PURCHASE_PENDING, request_id=request.request_id,
                   payload={"purchase_ref_id": draft.purchase_ref_id, "deadline": deadline}),
        ]
        await self.dispatcher.dispatch(intents)

        levels = len({step.level for step in chain})
        return SubmitResult(
            requires_approval=True,
            reason=gate.reason,
            request_id=request.request_id,
            first_approvers=[s.approver_id for s in chain if s.level == request.current_level],
            deadline=deadline,
            estimated_hours=self.deadlines.estimate_approval_hours(levels, urgency)
        )

    def _build_request(self, draft, requester, justification, chain, deadline, policy, now) -> ApprovalRequest:
        urgency = justification.urgency
        credit_limit = policy.credit_limit if policy else None
        return ApprovalRequest(
            request_id=f"APR-{uuid.uuid4().hex[:12].upper()}",
            requester_id=requester.user_id,
            company_id=requester.company_id,
            purchase_ref_id=draft.purchase_ref_id,
            chain=chain,
            justification=Justification(**justification.model_dump(include=set(Justification.model_fields))),
            financials=Financials(
                amount=draft.amount,
                currency=draft.currency,
                budget_code=justification.budget_code,
                cost_center=justification.cost_center,
                project_code=justification.project_code,
                available_budget=justification.available_budget,
                breakdown=CostBreakdown(
                    accommodation=draft.base_amount,
                    taxes=draft.tax_amount,
                    extras=draft.extras_amount,
                    fees=draft.fees_amount
                )
            ),
            timeline=Timeline(
                created_at=now,
                required_by=deadline,
                sla_target_hours=self.deadlines.compute_sla(urgency)
            ),
            rules=ApprovalRules(
                allow_auto_approval=policy.allow_auto_approval if policy else False,
                auto_approval_threshold=policy.auto_approval_threshold if policy else 0.0,
                parallel_approval_allowed=urgency == Urgency.CRITICAL,
                auto_escalation_delay_hours=self.deadlines.compute_escalation_delay(urgency),
                require_consensus=draft.amount > settings.HIGH_VALUE_ADMIN_THRESHOLD
            ),
            metadata=RequestMetadata(
                source=draft.source,
                flags=RequestFlags(
                    is_urgent=urgency in (Urgency.HIGH, Urgency.CRITICAL),
                    requires_special_approval=bool(credit_limit) and draft.amount > credit_limit * 0.5
                )
            )
        )

    # ===== Transitions =====

    async def decide(self, request_id: str, approver_id: str, decision: str,
                     comments: Optional[str] = None, now: Optional[datetime] = None) -> Transition:
        return await self._run(self.state_machine.decide, request_id, approver_id, decision, comments, now=now)

    async def delegate(self, request_id: str, from_approver_id: str, to_approver_id: str,
                       comments: Optional[str] = None, now: Optional[datetime] = None) -> Transition:
        return await self._run(self.state_machine.delegate, request_id, from_approver_id, to_approver_id,
                               comments, now=now)

    async def escalate(self, request_id: str, trigger: Optional[str] = None,
                       actor_id: Optional[str] = None, now: Optional[datetime] = None) -> Transition:
        if actor_id is not None:
            request = await self.store.load(request_id)
            actor = await self.directory.get_user(actor_id)
            permission_checker.check_can_escalate(actor, request)
        trigger = trigger or ("manual" if actor_id else "timeout")
        return await self._run(self.state_machine.escalate, request_id, trigger, now=now)

    async def record_reminder(self, request_id: str, now: Optional[datetime] = None) -> Transition:
        return await self._run(self.state_machine.record_reminder, request_id, now=now)

    async def cancel(self, request_id: str, actor_id: str, reason: Optional[str] = None,
                     now: Optional[datetime] = None) -> Transition:
        return await self._run(self.state_machine.cancel, request_id, actor_id, reason, now=now)

    async def expire(self, request_id: str, now: Optional[datetime] = None) -> Transition:
        return await self._run(self.state_machine.expire, request_id, now=now)

    async def _run(self, operation, *args, **kwargs) -> Transition:
        """
        Applies one state machine operation, re-running it against fresh state
        after a lost write race. The retry re-validates, so the loser of a race
        on the same step ends in AlreadyResolved or NotAuthorized.
        """
        for attempt in range(1, self.retry_attempts + 1):
            try:
                transition = await operation(*args, **kwargs)
                break
            except VersionConflict as e:
                if attempt == self.retry_attempts:
                    logger.error(f"Giving up after {attempt} conflicting writes on {e.request_id}")
                    raise
                logger.warning(f"Version conflict on {e.request_id}, retry {attempt}/{self.retry_attempts - 1}")

        if transition.intents:
            await self.dispatcher.dispatch(transition.intents)
        if transition.outcome in (Outcome.APPROVED_FINAL, Outcome.REJECTED):
            await self._record_stats(transition.request)
        return transition

    async def _record_stats(self, request: ApprovalRequest):
        try:
            await self.stats.record_outcome(request)
        except Exception as e:
            logger.error(f"Stats update failed for {request.request_id}: {e}")

    # ===== Reads =====

    async def list_pending_for(self, approver_id: str, filters: Optional[Dict[str, Any]] = None,
                               page: int = 1, limit: int = 20, sort_by: str = "created_at",
                               now: Optional[datetime] = None) -> PendingPage:
        now = now or datetime.utcnow()
        filters = dict(filters or {})
        page = max(int(filters.pop("page", page)), 1)
        limit = max(int(filters.pop("limit", limit)), 1)
        sort_by = filters.pop("sort_by", sort_by)
        requests = await self.store.find_pending_for(
            approver_id, filters, skip=(page - 1) * limit, limit=limit, sort_by=sort_by
        )
        total = await self.store.count_pending_for(approver_id, filters)

        items = [self._pending_item(request, approver_id, now) for request in requests]
        return PendingPage(
            approvals=items,
            pagination={
                "current_page": page,
                "total_pages": math.ceil(total / limit) if limit else 0,
                "total_items": total,
                "items_per_page": limit
            },
            summary={
                "total": total,
                "overdue": sum(1 for i in items if i.is_overdue),
                "urgent": sum(1 for i in items if i.urgency in (Urgency.HIGH, Urgency.CRITICAL))
            }
        )

    @staticmethod
    def _pending_item(request: ApprovalRequest, user_id: str, now: datetime) -> PendingApproval:
        own_steps = [s for s in request.chain if s.decider_id == user_id and s.status == StepStatus.PENDING]
        return PendingApproval(
            request_id=request.request_id,
            requester_id=request.requester_id,
            purchase_ref_id=request.purchase_ref_id,
            amount=request.amount,
            currency=request.financials.currency,
            urgency=request.justification.urgency,
            purpose=request.justification.purpose,
            current_level=request.current_level,
            user_level=min((s.level for s in own_steps), default=None),
            can_decide=any(s.level == request.current_level for s in own_steps),
            is_overdue=request.is_overdue(now),
            hours_remaining=request.hours_remaining(now),
            progress_percentage=request.progress_percentage(),
            required_by=request.timeline.required_by
        )

    async def history(self, request_id: str) -> RequestHistory:
        request = await self.store.load(request_id)
        entries: List[HistoryEntry] = [HistoryEntry(
            at=request.timeline.created_at,
            type="created",
            action="Request created",
            actor_id=request.requester_id,
            details=request.justification.purpose
        )]

        for step in request.chain:
            if step.status in (StepStatus.APPROVED, StepStatus.REJECTED) and step.decided_at:
                entries.append(HistoryEntry(
                    at=step.decided_at,
                    type=step.status,
                    action="Approved" if step.status == StepStatus.APPROVED else "Rejected",
                    actor_id=step.decider_id,
                    details=step.comments,
                    level=step.level
                ))

        for comm in request.communications:
            entries.append(HistoryEntry(
                at=comm.sent_at,
                type="communication",
                action=f"{comm.channel} message",
                actor_id=comm.from_user_id,
                target_id=comm.to_user_id,
                details=comm.subject
            ))

        for escalation in request.escalation.history:
            entries.append(HistoryEntry(
                at=escalation.escalated_at,
                type="escalation",
                action=f"Escalated (level {escalation.level})",
                target_id=escalation.escalated_to,
                details=escalation.reason
            ))

        if request.final_status == FinalStatus.EXPIRED and request.timeline.expired_at:
            entries.append(HistoryEntry(
                at=request.timeline.expired_at,
                type="expired",
                action="Approval deadline passed"
            ))

        entries.sort(key=lambda e: e.at)
        return RequestHistory(summary=request.summary(), timeline=entries)

request_coordinator = RequestCoordinator()
