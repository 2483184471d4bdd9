from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


AUDIT_CHAIN_ROOT_HASH = "0" * 64


class AuditAction:
    GOVERNANCE_DECISION = "GOVERNANCE_DECISION"
    LOCK_SET = "LOCK_SET"
    LOCK_EMERGENCY_UNLOCK = "LOCK_EMERGENCY_UNLOCK"
    LOCK_AUTO_RELOCK = "LOCK_AUTO_RELOCK"
    LOCK_SCHEDULE_ADDED = "LOCK_SCHEDULE_ADDED"
    LOCK_SCHEDULE_TRANSITION = "LOCK_SCHEDULE_TRANSITION"
    APPROVAL_CREATED = "APPROVAL_CREATED"
    APPROVAL_NOTIFIED = "APPROVAL_NOTIFIED"
    APPROVAL_VOTE_CAST = "APPROVAL_VOTE_CAST"
    APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
    APPROVAL_CANCELLED = "APPROVAL_CANCELLED"


class ResourceType:
    DEPLOYMENT = "deployment"
    ENVIRONMENT_LOCK = "environment_lock"
    APPROVAL_REQUEST = "approval_request"


class AuditEntry(BaseModel):
    """
    One immutable audit record. Instances are frozen; persisted rows are
    protected by storage triggers.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str
    tenant_id: str
    seq: int
    timestamp: datetime
    action: str
    resource_type: str
    resource_id: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    result: str
    reason_code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_hash: str = AUDIT_CHAIN_ROOT_HASH
    entry_hash: str


class AuditFilters(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    action: Optional[str] = None
    user_id: Optional[str] = None
    from_ts: Optional[datetime] = Field(default=None, alias="from")
    to_ts: Optional[datetime] = Field(default=None, alias="to")
    limit: Optional[int] = Field(default=None, ge=1)
    page_size: int = Field(default=100, ge=1, le=1000)
