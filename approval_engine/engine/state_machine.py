import logging
from datetime import datetime
from typing import Any, List, Optional, Union
from pydantic import BaseModel, ConfigDict
from approval_engine.database import db
from approval_engine.models.approval import (
    ApprovalRequest, ApprovalStep, Decision, EscalationEntry, FinalStatus, Outcome,
    StepStatus, Urgency, TERMINAL_TIMESTAMP_FIELDS,
)
from approval_engine.models.directory import DirectoryUser
from approval_engine.models.intent import Intent, IntentType
from approval_engine.guardrails.permissions import permission_checker
from approval_engine.exceptions import (
    AlreadyResolved, InvalidDecision, InvalidInput, NoApproverFound, NotAuthorized,
)

logger = logging.getLogger(__name__)

# Stored field limits: ApprovalStep.comments and Communication.content
MAX_COMMENT_LENGTH = 1000
MAX_MESSAGE_LENGTH = 2000

DECISION_ALIASES = {
    "approve": Decision.APPROVE,
    "approved": Decision.APPROVE,
    "reject": Decision.REJECT,
    "rejected": Decision.REJECT,
}

class Transition(BaseModel):
    """Result of one state machine operation, plus the side effects it calls for."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: Outcome
    request: ApprovalRequest
    intents: List[Intent] = []
    next_level: Optional[int] = None
    message: str = ""

    @property
    def changed(self) -> bool:
        return self.outcome != Outcome.NO_OP

class ApprovalStateMachine:
    """
    Owns the lifecycle of approval requests.

    Every operation is one read-modify-write: load the request, validate the
    transition against the loaded state, mutate it, then save it guarded by
    the loaded version. A concurrent writer makes the save fail with
    VersionConflict; nothing here locks.
    """

    def __init__(self, store=None, directory=None, permissions=None):
        self._store = store
        self._directory = directory
        self.permissions = permissions or permission_checker

    @property
    def store(self):
        return self._store or db.approvals

    @property
    def directory(self):
        return self._directory or db.directory

    # ===== Creation =====

    async def create(self, request: ApprovalRequest, now: Optional[datetime] = None) -> Transition:
        """Persist a freshly built request and notify its first level."""
        now = now or datetime.utcnow()
        if not request.chain:
            raise NoApproverFound("Cannot create a request with an empty chain", request.request_id)

        request.final_status = FinalStatus.PENDING
        request.current_level = min(step.level for step in request.chain)
        first_steps = request.pending_current_steps()
        for step in first_steps:
            step.notified_at = now
        request.timeline.first_notification_at = now
        request.timeline.last_activity_at = now

        await self.store.insert(request)
        logger.info(f"Approval request {request.request_id} created at level {request.current_level}")

        return Transition(
            outcome=Outcome.PENDING,
            request=request,
            next_level=request.current_level,
            intents=[self._notify_approvers_intent(request, first_steps)],
            message="Approval request created"
        )

    # ===== Decisions =====

    async def decide(self, request_id: str, approver_id: str, decision: Union[str, Decision],
                     comments: Optional[str] = None, now: Optional[datetime] = None) -> Transition:
        decision = self.parse_decision(decision)
        self._check_text(request_id, "comments", comments, MAX_COMMENT_LENGTH)
        now = now or datetime.utcnow()

        request = await self.store.load(request_id)
        expected_version = request.version
        self._ensure_pending(request)

        step = self._find_decidable_step(request, approver_id)
        self.permissions.check_sod(approver_id, request)
        actor = await self.directory.get_user(approver_id)
        self.permissions.check_decider(actor, request, step)

        step.decided_at = now
        step.comments = comments

        if decision == Decision.REJECT:
            transition = self._apply_rejection(request, step, approver_id, comments, now)
        else:
            transition = self._apply_approval(request, step, approver_id, comments, now)

        await self._save(request, expected_version, now)
        logger.info(f"{request_id}: {approver_id} -> {transition.outcome.value}")
        return transition

    def _apply_rejection(self, request: ApprovalRequest, step: ApprovalStep, approver_id: str,
                         comments: Optional[str], now: datetime) -> Transition:
        step.status = StepStatus.REJECTED
        self._finalize(request, FinalStatus.REJECTED, now)
        request.add_communication(
            "Request rejected", comments or "Request rejected without comment",
            from_user_id=approver_id, to_user_id=request.requester_id, at=now
        )
        return Transition(
            outcome=Outcome.REJECTED,
            request=request,
            message="Request rejected",
            intents=[
                self._intent(IntentType.NOTIFY_REQUESTER, request, [request.requester_id],
                             status=FinalStatus.REJECTED.value, rejected_by=approver_id, reason=comments),
                self._intent(IntentType.CANCEL_PURCHASE, request, [],
                             reason=comments or "Approval rejected", cancelled_by=approver_id),
            ]
        )

    def _apply_approval(self, request: ApprovalRequest, step: ApprovalStep, approver_id: str,
                        comments: Optional[str], now: datetime) -> Transition:
        step.status = StepStatus.APPROVED
        request.add_communication(
            "Approval granted", comments or "Request approved",
            from_user_id=approver_id, to_user_id=request.requester_id, at=now
        )
        # OR-gate: one approval satisfies the level
        for sibling in request.pending_current_steps():
            sibling.status = StepStatus.SKIPPED

        next_level = request.next_pending_level()
        if next_level is not None:
            previous = request.current_level
            request.current_level = next_level
            next_steps = request.pending_current_steps()
            for next_step in next_steps:
                next_step.notified_at = now
            return Transition(
                outcome=Outcome.APPROVED_PARTIAL,
                request=request,
                next_level=next_level,
                message=f"Level {previous} approved, awaiting level {next_level}",
                intents=[self._notify_approvers_intent(request, next_steps)]
            )

        self._finalize(request, FinalStatus.APPROVED, now)
        return Transition(
            outcome=Outcome.APPROVED_FINAL,
            request=request,
            message="Request fully approved",
            intents=[
                self._intent(IntentType.NOTIFY_REQUESTER, request, [request.requester_id],
                             status=FinalStatus.APPROVED.value, approved_by=approver_id),
                self._intent(IntentType.CONFIRM_PURCHASE, request, [],
                             approved_by=approver_id, final_amount=request.amount,
                             currency=request.financials.currency),
            ]
        )

    # ===== Delegation =====

    async def delegate(self, request_id: str, from_approver_id: str, to_approver_id: str,
                       comments: Optional[str] = None, now: Optional[datetime] = None) -> Transition:
        self._check_text(request_id, "comments", comments, MAX_MESSAGE_LENGTH)
        now = now or datetime.utcnow()
        request = await self.store.load(request_id)
        expected_version = request.version
        self._ensure_pending(request)

        if from_approver_id == to_approver_id:
            raise NotAuthorized("Cannot delegate a step to its own approver", request_id)

        step = next((s for s in request.pending_current_steps() if s.approver_id == from_approver_id), None)
        if step is None:
            raise NotAuthorized(f"{from_approver_id} holds no pending step at level {request.current_level}", request_id)

        self.permissions.check_sod(to_approver_id, request)
        target = await self.directory.get_user(to_approver_id)
        self.permissions.check_delegate_target(target, request)

        step.delegated_to_id = to_approver_id
        step.delegated_at = now
        step.notified_at = now
        request.add_communication(
            "Approval delegated",
            comments or f"Approval delegated for {request.justification.purpose}",
            from_user_id=from_approver_id, to_user_id=to_approver_id, direction="outbound", at=now
        )

        await self._save(request, expected_version, now)
        logger.info(f"{request_id}: level {step.level} delegated {from_approver_id} -> {to_approver_id}")

        return Transition(
            outcome=Outcome.DELEGATED,
            request=request,
            next_level=request.current_level,
            message=f"Delegated to {to_approver_id}",
            intents=[self._intent(
                IntentType.NOTIFY_DELEGATE, request, [to_approver_id],
                delegator_id=from_approver_id, comments=comments, level=step.level,
                urgency=step.urgency, deadline=request.timeline.required_by
            )]
        )

    # ===== Escalation & reminders =====

    async def escalate(self, request_id: str, trigger: str = "timeout",
                       now: Optional[datetime] = None) -> Transition:
        """
        Appends a higher-authority step and moves current_level onto it.
        Pending steps it supersedes are marked skipped.
        """
        now = now or datetime.utcnow()
        request = await self.store.load(request_id)
        expected_version = request.version
        if request.is_terminal:
            return Transition(outcome=Outcome.NO_OP, request=request, message="Request already resolved")

        target = await self._find_escalation_target(request)
        if target is None:
            raise NoApproverFound(f"No escalation target in company {request.company_id}", request_id)

        superseded = [s for s in request.chain if s.is_pending]
        for step in superseded:
            step.status = StepStatus.SKIPPED

        new_level = len(request.chain) + 1
        request.chain.append(ApprovalStep(
            approver_id=target.user_id,
            level=new_level,
            urgency=Urgency.HIGH,
            escalated=True,
            assigned_at=now,
            notified_at=now
        ))
        request.current_level = new_level

        escalation = request.escalation
        escalation.is_escalated = True
        escalation.escalated_at = now
        escalation.escalated_to = target.user_id
        escalation.escalation_level += 1
        escalation.history.append(EscalationEntry(
            level=escalation.escalation_level,
            reason=trigger,
            escalated_to=target.user_id,
            escalated_at=now
        ))
        request.add_communication(
            "Approval escalated", f"Escalated ({trigger}) to level {new_level}",
            to_user_id=target.user_id, direction="outbound", at=now
        )

        await self._save(request, expected_version, now)
        logger.warning(f"{request_id} escalated to {target.user_id} ({trigger}), level {new_level}")

        return Transition(
            outcome=Outcome.ESCALATED,
            request=request,
            next_level=new_level,
            message=f"Escalated to {target.user_id}",
            intents=[self._intent(
                IntentType.NOTIFY_ESCALATION, request, [target.user_id],
                reason=trigger, escalation_level=escalation.escalation_level,
                original_approver_ids=[s.decider_id for s in superseded],
                amount=request.amount, deadline=request.timeline.required_by
            )]
        )

    async def _find_escalation_target(self, request: ApprovalRequest) -> Optional[DirectoryUser]:
        admin = await self.directory.top_administrator(request.company_id)
        if admin and admin.user_id != request.requester_id:
            return admin
        top = await self.directory.find_highest_limit_approver(request.company_id)
        if top and top.user_id != request.requester_id:
            return top
        return None

    async def record_reminder(self, request_id: str, now: Optional[datetime] = None) -> Transition:
        now = now or datetime.utcnow()
        request = await self.store.load(request_id)
        expected_version = request.version
        steps = [] if request.is_terminal else request.pending_current_steps()
        if not steps:
            return Transition(outcome=Outcome.NO_OP, request=request, message="No pending step to remind")

        for step in steps:
            step.reminder_count += 1
            step.last_reminder_at = now

        await self._save(request, expected_version, now)
        hours_pending = int((now - request.timeline.created_at).total_seconds() // 3600)

        return Transition(
            outcome=Outcome.REMINDED,
            request=request,
            next_level=request.current_level,
            intents=[self._intent(
                IntentType.SEND_REMINDER, request, [s.decider_id for s in steps],
                reminder_number=max(s.reminder_count for s in steps),
                hours_pending=hours_pending, deadline=request.timeline.required_by
            )]
        )

    # ===== Cancellation & expiry =====

    async def cancel(self, request_id: str, actor_id: str, reason: Optional[str] = None,
                     now: Optional[datetime] = None) -> Transition:
        self._check_text(request_id, "reason", reason, MAX_MESSAGE_LENGTH)
        now = now or datetime.utcnow()
        request = await self.store.load(request_id)
        expected_version = request.version
        self._ensure_pending(request)

        actor = None
        if actor_id != request.requester_id:
            actor = await self.directory.get_user(actor_id)
        self.permissions.check_can_cancel(actor, actor_id, request)

        # only approvers who were told about the request hear of its cancellation
        waiting = [s.decider_id for s in request.chain if s.is_pending and s.notified_at is not None]
        self._finalize(request, FinalStatus.CANCELLED, now)
        request.add_communication(
            "Request cancelled", reason or "Request cancelled by user",
            from_user_id=actor_id, to_user_id=request.requester_id, at=now
        )

        await self._save(request, expected_version, now)
        logger.info(f"{request_id} cancelled by {actor_id}")

        intents = [self._intent(IntentType.CANCEL_PURCHASE, request, [],
                                reason=reason or "Approval request cancelled", cancelled_by=actor_id)]
        if waiting:
            intents.append(self._intent(IntentType.NOTIFY_CANCELLATION, request, waiting, reason=reason))
        return Transition(outcome=Outcome.CANCELLED, request=request, message="Request cancelled", intents=intents)

    async def expire(self, request_id: str, now: Optional[datetime] = None) -> Transition:
        """Idempotent: terminal or not-yet-due requests are left untouched."""
        now = now or datetime.utcnow()
        request = await self.store.load(request_id)
        expected_version = request.version
        if request.is_terminal:
            return Transition(outcome=Outcome.NO_OP, request=request, message=f"Already {request.final_status}")
        if not request.is_overdue(now):
            return Transition(outcome=Outcome.NO_OP, request=request, message="Deadline not reached")

        self._finalize(request, FinalStatus.EXPIRED, now)
        await self._save(request, expected_version, now)
        logger.info(f"{request_id} expired (deadline {request.timeline.required_by})")

        return Transition(
            outcome=Outcome.EXPIRED,
            request=request,
            message="Approval deadline passed",
            intents=[
                self._intent(IntentType.CANCEL_PURCHASE, request, [], reason="Approval deadline passed"),
                self._intent(IntentType.NOTIFY_REQUESTER, request, [request.requester_id],
                             status=FinalStatus.EXPIRED.value),
            ]
        )

    # ===== Helpers =====

    @staticmethod
    def parse_decision(decision: Union[str, Decision]) -> Decision:
        key = decision.value if isinstance(decision, Decision) else str(decision).strip().lower()
        if key not in DECISION_ALIASES:
            raise InvalidDecision(f"Invalid decision {decision!r}, use 'approve' or 'reject'")
        return DECISION_ALIASES[key]

    @staticmethod
    def _check_text(request_id: str, field: str, value: Optional[str], limit: int):
        if value is not None and len(value) > limit:
            raise InvalidInput(f"{field} is {len(value)} characters, limit is {limit}", request_id)

    @staticmethod
    def _ensure_pending(request: ApprovalRequest):
        if request.is_terminal:
            raise AlreadyResolved(request.request_id, request.final_status)

    @staticmethod
    def _find_decidable_step(request: ApprovalRequest, user_id: str) -> ApprovalStep:
        for step in request.pending_current_steps():
            if step.decider_id == user_id:
                return step
        raise NotAuthorized(
            f"{user_id} cannot decide level {request.current_level} of {request.request_id}",
            request.request_id
        )

    @staticmethod
    def _finalize(request: ApprovalRequest, status: FinalStatus, now: datetime):
        request.final_status = status
        setattr(request.timeline, TERMINAL_TIMESTAMP_FIELDS[status], now)

        timeline = request.timeline
        minutes = int((now - timeline.created_at).total_seconds() // 60)
        timeline.processing_time_minutes = minutes
        timeline.sla_compliant = minutes <= timeline.sla_target_hours * 60

    async def _save(self, request: ApprovalRequest, expected_version: int, now: datetime):
        request.timeline.last_activity_at = now
        await self.store.save(request, expected_version)

    def _notify_approvers_intent(self, request: ApprovalRequest, steps: List[ApprovalStep]) -> Intent:
        return self._intent(
            IntentType.NOTIFY_APPROVERS, request, [s.decider_id for s in steps],
            level=request.current_level,
            urgency=max((s.urgency for s in steps), key=_urgency_rank, default=Urgency.MEDIUM),
            amount=request.amount,
            currency=request.financials.currency,
            purpose=request.justification.purpose,
            requester_id=request.requester_id,
            deadline=request.timeline.required_by
        )

    @staticmethod
    def _intent(intent_type: IntentType, request: ApprovalRequest, targets: List[str], **payload: Any) -> Intent:
        return Intent(
            type=intent_type,
            request_id=request.request_id,
            target_user_ids=list(dict.fromkeys(targets)),
            payload={"purchase_ref_id": request.purchase_ref_id, **payload}
        )

def _urgency_rank(urgency: str) -> int:
    return ["low", "medium", "high", "critical"].index(urgency)

approval_state_machine = ApprovalStateMachine()
