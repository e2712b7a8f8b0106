import logging
from typing import List, Optional
from approval_engine.config import settings
from approval_engine.database import db
from approval_engine.models.approval import ApprovalStep, Urgency
from approval_engine.models.directory import DirectoryUser
from approval_engine.exceptions import NoApproverFound

logger = logging.getLogger(__name__)

class ChainBuilder:
    """
    Walks the management hierarchy to produce the ordered approval chain.

    Chain levels are numbered 1..n in insertion order. Hierarchy depth is
    tracked separately: it grows with every approving manager passed
    (added or under limit) and caps the walk at MAX_HIERARCHY_DEPTH.
    Managers who cannot approve are passed through without consuming depth;
    the visited set stops manager cycles.
    """

    def __init__(self, directory=None, max_depth: Optional[int] = None,
                 admin_threshold: Optional[float] = None):
        self._directory = directory
        self.max_depth = max_depth or settings.MAX_HIERARCHY_DEPTH
        self.admin_threshold = settings.HIGH_VALUE_ADMIN_THRESHOLD if admin_threshold is None else admin_threshold

    @property
    def directory(self):
        return self._directory or db.directory

    async def build_chain(self, requester: DirectoryUser, amount: float, urgency: str = "medium") -> List[ApprovalStep]:
        logger.info(f"Building approval chain for {requester.user_id}: {amount} ({urgency})")

        chain = await self._walk_hierarchy(requester, amount, urgency)

        if amount > self.admin_threshold and requester.company_id:
            admin = await self.directory.top_administrator(requester.company_id)
            if admin and admin.user_id != requester.user_id and \
                    not any(step.approver_id == admin.user_id for step in chain):
                chain.append(ApprovalStep(
                    approver_id=admin.user_id,
                    level=len(chain) + 1,
                    urgency=Urgency.HIGH
                ))
                logger.info(f"Company admin {admin.user_id} appended for high value amount")

        if not chain and requester.company_id:
            fallback = await self.directory.find_fallback_approver(
                requester.company_id, amount, exclude_user_id=requester.user_id
            )
            if fallback:
                chain.append(ApprovalStep(approver_id=fallback.user_id, level=1, urgency=urgency))
                logger.info(f"Fallback approver {fallback.user_id} selected")

        if not chain:
            raise NoApproverFound(f"No approver found for {amount} (requester {requester.user_id})")

        logger.info(f"Chain built: {[(s.approver_id, s.level) for s in chain]}")
        return chain

    async def _walk_hierarchy(self, requester: DirectoryUser, amount: float, urgency: str) -> List[ApprovalStep]:
        chain: List[ApprovalStep] = []
        visited = {requester.user_id}
        current = requester
        depth = 1

        while depth <= self.max_depth:
            manager = await self.directory.manager_of(current.user_id)
            if manager is None:
                logger.debug(f"No manager above {current.user_id} at depth {depth}")
                break
            if manager.user_id in visited:
                logger.warning(f"Manager cycle detected at {manager.user_id}, stopping walk")
                break
            visited.add(manager.user_id)

            if not manager.can_approve or not manager.is_active:
                logger.debug(f"Manager {manager.user_id} cannot approve, walking past")
                current = manager
                continue

            if manager.approval_limit < amount:
                if urgency == Urgency.CRITICAL and depth >= settings.CRITICAL_INCLUSION_MIN_DEPTH:
                    chain.append(ApprovalStep(
                        approver_id=manager.user_id,
                        level=len(chain) + 1,
                        urgency=Urgency.CRITICAL,
                        limit_waived=True
                    ))
                    logger.warning(
                        f"Critical request: {manager.user_id} added despite limit "
                        f"{manager.approval_limit} < {amount}"
                    )
                current = manager
                depth += 1
                continue

            level = len(chain) + 1
            chain.append(ApprovalStep(
                approver_id=manager.user_id,
                level=level,
                urgency=self.step_urgency(urgency, level)
            ))

            if manager.approval_limit >= amount * 2 or manager.is_company_admin:
                logger.debug(f"Sufficient authority reached at {manager.user_id}")
                break

            current = manager
            depth += 1

        return chain

    @staticmethod
    def step_urgency(request_urgency: str, level: int) -> Urgency:
        if request_urgency == Urgency.CRITICAL:
            return Urgency.HIGH
        if request_urgency == Urgency.HIGH and level == 1:
            return Urgency.HIGH
        return Urgency.MEDIUM

chain_builder = ChainBuilder()
