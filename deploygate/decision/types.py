import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deploygate.errors import ApprovalRequired, AuthorizationError, ConfigurationError, LockViolation


class DecisionStatus(str, Enum):
    ALLOWED = "ALLOWED"
    BLOCKED = "BLOCKED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class DeploymentRequest(BaseModel):
    """What the CI runner asks for: may this commit of this branch deploy?"""
    model_config = ConfigDict(extra="forbid")

    branch: str = Field(min_length=1)
    commit_sha: str = Field(min_length=1)
    requesting_user_id: str = Field(min_length=1)
    requesting_role: str = Field(min_length=1)
    tag: Optional[str] = None
    execution_ref: Optional[str] = None

    @field_validator("branch", "commit_sha", "requesting_user_id", "requesting_role")
    @classmethod
    def _strip(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must be non-empty")
        return text


class GovernanceDecision(BaseModel):
    """
    The verdict for one deployment request. This object is what gets audited
    and handed back to the caller.
    """
    decision_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: DecisionStatus
    environment: Optional[str] = None
    reason_code: str
    message: str
    approval_request_id: Optional[str] = None
    approval_status: Optional[str] = None
    lock_type: Optional[str] = None
    matched_rule: Optional[str] = None
    branch: str
    commit_sha: str
    requesting_user_id: str
    requesting_role: str
    evaluated_at: datetime
    audit_entry_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.status == DecisionStatus.ALLOWED

    def raise_for_status(self) -> "GovernanceDecision":
        if self.status == DecisionStatus.ALLOWED:
            return self
        details = {"decision_id": self.decision_id, "environment": self.environment}
        if self.status == DecisionStatus.PENDING_APPROVAL:
            raise ApprovalRequired(
                self.message,
                reason_code=self.reason_code,
                details={**details, "approval_request_id": self.approval_request_id, "approval_status": self.approval_status},
            )
        error_cls = {
            "NO_BRANCH_MAPPING": ConfigurationError,
            "CONFIG_INVALID": ConfigurationError,
            "ENVIRONMENT_HARD_LOCKED": LockViolation,
        }.get(self.reason_code, AuthorizationError)
        raise error_cls(self.message, reason_code=self.reason_code, details=details)

    def summary(self) -> List[str]:
        lines = [f"{self.status.value}: {self.message}"]
        if self.environment:
            lines.append(f"environment={self.environment} lock={self.lock_type} rule={self.matched_rule}")
        if self.approval_request_id:
            lines.append(f"approval={self.approval_request_id} status={self.approval_status}")
        return lines
