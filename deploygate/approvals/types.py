from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deploygate.rbac.types import Role


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    NOTIFIED = "NOTIFIED"
    VOTING = "VOTING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.EXPIRED})
OPEN_STATUSES = (ApprovalStatus.PENDING, ApprovalStatus.NOTIFIED, ApprovalStatus.VOTING)


class VoteDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_CHANGES = "REQUEST_CHANGES"

    @classmethod
    def parse(cls, value: Any) -> "VoteDecision":
        if isinstance(value, VoteDecision):
            return value
        text = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
        aliases = {"APPROVED": "APPROVE", "REJECTED": "REJECT", "CHANGES_REQUESTED": "REQUEST_CHANGES"}
        return cls(aliases.get(text, text))


class Vote(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str
    decision: VoteDecision
    comment: Optional[str] = None
    timestamp: datetime


class ApprovalRequest(BaseModel):
    """
    Snapshot of one approval chain. Mutated only by the workflow engine via
    versioned writes; once terminal it never changes again.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str
    tenant_id: str
    execution_ref: Optional[str] = None
    environment: str
    commit_sha: str
    generation: int = 1
    requested_by: str
    requested_role: Optional[str] = None
    required_approvals: int = Field(default=1, ge=1)
    required_roles: List[Role] = Field(default_factory=list)
    votes: List[Vote] = Field(default_factory=list)
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime
    expires_at: datetime
    block_self_approval: bool = True
    require_distinct_approvers: bool = True
    resolution_reason_code: Optional[str] = None
    resolved_at: Optional[datetime] = None
    version: int = 1

    @field_validator("required_roles", mode="before")
    @classmethod
    def _roles(cls, value: Any) -> List[Role]:
        return [Role.parse(role) for role in (value or [])]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class NotificationEvent(BaseModel):
    """
    Channel-agnostic notice that reviewers should be told about a request.
    Delivery is up to whoever consumes the outbox.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str
    request_id: str
    environment: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
