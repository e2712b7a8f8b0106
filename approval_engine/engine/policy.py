import logging
from typing import Optional
from pydantic import BaseModel
from approval_engine.models.config import CompanyPolicy
from approval_engine.models.directory import DirectoryUser
from approval_engine.exceptions import PolicyError

logger = logging.getLogger(__name__)

class PolicyDecision(BaseModel):
    required: bool
    reason: str

class PolicyEvaluator:
    """
    Decides whether a purchase needs human approval at all.
    """

    def should_require_approval(self, policy: Optional[CompanyPolicy], amount: float,
                                requester: DirectoryUser) -> PolicyDecision:
        if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount < 0:
            raise PolicyError(f"Invalid purchase amount: {amount!r}")

        if not requester.company_id:
            return PolicyDecision(required=False, reason="Individual user, no company approval policy")

        if policy is None:
            # Fail closed
            logger.warning(f"No approval policy for company {requester.company_id}, requiring approval")
            return PolicyDecision(required=True, reason="No company policy found, approval required")

        if not policy.require_approval:
            return PolicyDecision(required=False, reason="Approval disabled for this company")

        if amount < policy.approval_limit:
            return PolicyDecision(
                required=False,
                reason=f"Amount below approval threshold ({policy.approval_limit})"
            )

        if requester.user_type in policy.exempt_user_types or requester.is_system_admin:
            return PolicyDecision(required=False, reason=f"Requester role {requester.user_type} is exempt")

        return PolicyDecision(required=True, reason="Approval required by company rules")

policy_evaluator = PolicyEvaluator()
