from __future__ import annotations

from typing import Any, Dict, Optional


class GovernanceError(RuntimeError):
    """
    Base class for every typed failure the engine reports.
    Each error carries a stable reason code for callers to render or log.
    """

    reason_code = "GOVERNANCE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        reason_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if reason_code:
            self.reason_code = reason_code
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": type(self).__name__,
            "reason_code": self.reason_code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(GovernanceError):
    reason_code = "NO_BRANCH_MAPPING"


class AuthorizationError(GovernanceError):
    reason_code = "RBAC_DENIED"


class LockAuthorizationError(AuthorizationError):
    reason_code = "LOCK_MANAGEMENT_DENIED"


class LockViolation(GovernanceError):
    reason_code = "ENVIRONMENT_HARD_LOCKED"


class ApprovalRequired(GovernanceError):
    reason_code = "APPROVAL_REQUIRED"


class RequestNotVotable(GovernanceError):
    reason_code = "REQUEST_NOT_VOTABLE"


class ApprovalExpired(RequestNotVotable):
    reason_code = "APPROVAL_EXPIRED"


class SelfApprovalBlocked(GovernanceError):
    reason_code = "SELF_APPROVAL_BLOCKED"


class DuplicateVoterBlocked(GovernanceError):
    reason_code = "DUPLICATE_VOTER_BLOCKED"


class InvalidVote(GovernanceError):
    reason_code = "INVALID_VOTE"


class EmergencyUnlockDenied(GovernanceError):
    reason_code = "EMERGENCY_UNLOCK_DENIED"


class ConflictError(GovernanceError):
    reason_code = "CONCURRENT_WRITE_CONFLICT"


class ResourceNotFound(GovernanceError):
    reason_code = "NOT_FOUND"


class AuditWriteError(GovernanceError):
    reason_code = "AUDIT_WRITE_FAILED"
