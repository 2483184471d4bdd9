from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """
    Flat role set. Capabilities come from the permission matrix, never from
    any ordering between roles.
    """
    VIEWER = "viewer"
    DEVELOPER = "developer"
    OPERATOR = "operator"
    APPROVER = "approver"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: object) -> "Role":
        if isinstance(value, Role):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError as exc:
            raise ValueError(f"unknown role: {value!r}") from exc


class Capability(str, Enum):
    VIEW = "view"
    DEPLOY = "deploy"
    UNLOCK = "unlock"
    APPROVE = "approve"


@dataclass(frozen=True)
class AuthorizationResult:
    allowed: bool
    role: str
    environment: str
    capability: Capability
    reason_code: Optional[str] = None

    @classmethod
    def grant(cls, role: str, environment: str, capability: Capability) -> "AuthorizationResult":
        return cls(allowed=True, role=role, environment=environment, capability=capability)

    @classmethod
    def deny(
        cls,
        role: str,
        environment: str,
        capability: Capability,
        reason_code: str = "RBAC_DENIED",
    ) -> "AuthorizationResult":
        return cls(
            allowed=False,
            role=role,
            environment=environment,
            capability=capability,
            reason_code=reason_code,
        )
