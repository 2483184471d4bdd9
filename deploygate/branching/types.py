from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from deploygate.locks.types import LockType
from deploygate.rbac.matrix import normalize_environment
from deploygate.rbac.types import Role


TAGGED_SUFFIX = "(tagged)"


class BranchRule(BaseModel):
    """
    Maps a branch pattern to a target environment and its governance defaults.

    A pattern ending in ``(tagged)`` (e.g. ``main (tagged)``) only applies to
    tagged builds of that branch.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    pattern: str = Field(min_length=1)
    environment: str = Field(min_length=1)
    lock_type: LockType = LockType.UNLOCKED
    requires_approval: bool = False
    required_approvers: int = Field(default=1, ge=1)
    required_roles: List[Role] = Field(default_factory=list)
    tagged: bool = False
    order: int = 0
    approval_ttl_hours: Optional[int] = Field(default=None, ge=1)
    block_self_approval: bool = True
    require_distinct_approvers: bool = True

    @model_validator(mode="before")
    @classmethod
    def _split_tagged_suffix(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        pattern = str(data.get("pattern") or "").strip()
        if pattern.lower().endswith(TAGGED_SUFFIX):
            data = dict(data)
            data["pattern"] = pattern[: -len(TAGGED_SUFFIX)].strip()
            data["tagged"] = True
        return data

    @field_validator("environment")
    @classmethod
    def _environment(cls, value: str) -> str:
        return normalize_environment(value)

    @field_validator("lock_type", mode="before")
    @classmethod
    def _lock_type(cls, value: Any) -> LockType:
        return LockType.parse(value)

    @field_validator("required_roles", mode="before")
    @classmethod
    def _roles(cls, value: Any) -> List[Role]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        roles: List[Role] = []
        for raw in value:
            role = Role.parse(raw)
            if role not in roles:
                roles.append(role)
        return roles

    @property
    def display_pattern(self) -> str:
        return f"{self.pattern} {TAGGED_SUFFIX}" if self.tagged else self.pattern


class BranchResolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    branch: str
    environment: Optional[str] = None
    rule: Optional[BranchRule] = None
    specificity: Optional[int] = None
    reason_code: Optional[str] = None
    candidates: List[str] = Field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.rule is not None

    @classmethod
    def no_match(cls, branch: str) -> "BranchResolution":
        return cls(branch=branch, reason_code="NO_BRANCH_MAPPING")
