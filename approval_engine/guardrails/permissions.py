from enum import Enum
from typing import Optional
import logging
from approval_engine.models.approval import ApprovalRequest, ApprovalStep
from approval_engine.models.directory import DirectoryUser, Role, UserType
from approval_engine.exceptions import InactiveApprover, InsufficientLimit, NotAuthorized, PermissionInsufficient

logger = logging.getLogger(__name__)

class Permission(str, Enum):
    CANCEL_OWN_REQUEST = "CANCEL_OWN_REQUEST"
    CANCEL_ANY_REQUEST = "CANCEL_ANY_REQUEST"
    ESCALATE_REQUEST = "ESCALATE_REQUEST"

# User type / role -> Permissions Mapping
ROLE_PERMISSIONS = {
    Role.ADMIN: [p for p in Permission], # All
    UserType.COMPANY_ADMIN: [p for p in Permission],
    UserType.MANAGER: [Permission.CANCEL_OWN_REQUEST, Permission.ESCALATE_REQUEST],
    UserType.EMPLOYEE: [Permission.CANCEL_OWN_REQUEST],
}

class PermissionChecker:

    def has_permission(self, user: DirectoryUser, permission: Permission) -> bool:
        allowed = set(ROLE_PERMISSIONS.get(UserType(user.user_type), []))
        if user.role == Role.ADMIN:
            allowed.update(ROLE_PERMISSIONS[Role.ADMIN])
        return permission in allowed

    def check_decider(self, user: Optional[DirectoryUser], request: ApprovalRequest, step: ApprovalStep):
        """
        Raises unless ``user`` may decide ``step`` now. Last-resort critical
        steps were built below the approver's limit, so the limit is waived there.
        """
        if user is None or not user.is_active:
            logger.warning(f"Inactive approver {step.decider_id} on {request.request_id}")
            raise InactiveApprover(f"Approver {step.decider_id} is inactive", request.request_id)

        if not user.can_approve:
            raise PermissionInsufficient(f"User {user.user_id} cannot approve requests", request.request_id)

        if not step.limit_waived and user.approval_limit < request.amount:
            logger.warning(
                f"User {user.user_id} limit {user.approval_limit} below amount {request.amount} "
                f"on {request.request_id}"
            )
            raise PermissionInsufficient(
                f"Amount {request.amount} exceeds approval limit of {user.user_id}",
                request.request_id
            )

    def check_sod(self, user_id: str, request: ApprovalRequest):
        """
        Segregation of Duties: the requester never decides their own request.
        """
        if user_id == request.requester_id:
            logger.warning(f"SoD Violation: {user_id} requested {request.request_id} and cannot decide it.")
            raise NotAuthorized("Requester cannot decide their own request", request.request_id)

    def check_delegate_target(self, target: Optional[DirectoryUser], request: ApprovalRequest):
        if target is None or not target.is_active:
            raise InactiveApprover("Delegate is inactive or unknown", request.request_id)
        if not target.can_approve:
            raise InsufficientLimit(f"Delegate {target.user_id} cannot approve", request.request_id)
        if target.approval_limit < request.amount:
            raise InsufficientLimit(
                f"Delegate {target.user_id} limit {target.approval_limit} below {request.amount}",
                request.request_id
            )

    def check_can_escalate(self, actor: Optional[DirectoryUser], request: ApprovalRequest):
        if actor is None or not self.has_permission(actor, Permission.ESCALATE_REQUEST):
            raise NotAuthorized("Manual escalation requires a manager or administrator", request.request_id)
        if actor.role != Role.ADMIN and actor.company_id != request.company_id:
            raise NotAuthorized(f"User {actor.user_id} belongs to another company", request.request_id)

    def check_can_cancel(self, actor: Optional[DirectoryUser], actor_id: str, request: ApprovalRequest):
        if actor_id == request.requester_id:
            return
        if actor is not None and self.has_permission(actor, Permission.CANCEL_ANY_REQUEST):
            if actor.role == Role.ADMIN or actor.company_id == request.company_id:
                return
        logger.warning(f"User {actor_id} denied cancellation of {request.request_id}")
        raise NotAuthorized(f"User {actor_id} cannot cancel this request", request.request_id)

permission_checker = PermissionChecker()
