"""
Typed errors raised by the approval engine.

Every error carries a machine-readable ``code`` so callers can map it to a
response without parsing messages:

    ApprovalError
    +-- PolicyError             POLICY_ERROR
    +-- NoApproverFound         NO_APPROVER_FOUND
    +-- NotFound                NOT_FOUND
    +-- AlreadyResolved         ALREADY_RESOLVED
    +-- NotAuthorized           NOT_AUTHORIZED
    +-- PermissionInsufficient  PERMISSION_INSUFFICIENT
    +-- InactiveApprover        INACTIVE_APPROVER
    +-- InsufficientLimit       INSUFFICIENT_LIMIT
    +-- InvalidDecision         INVALID_DECISION
    +-- InvalidInput            INVALID_INPUT
    +-- VersionConflict         VERSION_CONFLICT (retryable)
"""
from typing import Optional


class ApprovalError(Exception):
    code: str = "APPROVAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.request_id = request_id

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "request_id": self.request_id}


class PolicyError(ApprovalError):
    code = "POLICY_ERROR"


class NoApproverFound(ApprovalError):
    code = "NO_APPROVER_FOUND"


class NotFound(ApprovalError):
    code = "NOT_FOUND"


class AlreadyResolved(ApprovalError):
    code = "ALREADY_RESOLVED"

    def __init__(self, request_id: str, final_status: str):
        super().__init__(f"Request {request_id} already {final_status}", request_id)
        self.final_status = final_status


class NotAuthorized(ApprovalError):
    code = "NOT_AUTHORIZED"


class PermissionInsufficient(ApprovalError):
    code = "PERMISSION_INSUFFICIENT"


class InactiveApprover(ApprovalError):
    code = "INACTIVE_APPROVER"


class InsufficientLimit(ApprovalError):
    code = "INSUFFICIENT_LIMIT"


class InvalidDecision(ApprovalError):
    code = "INVALID_DECISION"


class InvalidInput(ApprovalError):
    """Free text that would not fit the stored request."""
    code = "INVALID_INPUT"


class VersionConflict(ApprovalError):
    """Another writer saved the request first; reload and retry."""
    code = "VERSION_CONFLICT"
    retryable = True

    def __init__(self, request_id: str, expected_version: int):
        super().__init__(
            f"Request {request_id} changed concurrently (expected version {expected_version})",
            request_id,
        )
        self.expected_version = expected_version
