from __future__ import annotations

from typing import Any, Optional

from deploygate.errors import AuthorizationError, LockAuthorizationError
from deploygate.rbac.matrix import PermissionMatrix, normalize_environment
from deploygate.rbac.types import AuthorizationResult, Capability, Role


class RBACAuthorizer:
    """
    Pure capability check against a permission matrix. No side effects.
    """

    def __init__(self, matrix: PermissionMatrix):
        self.matrix = matrix

    def authorize(self, role: Any, environment: str, capability: Capability) -> AuthorizationResult:
        env = normalize_environment(environment)
        cap = Capability(capability)
        try:
            parsed = Role.parse(role)
        except ValueError:
            return AuthorizationResult.deny(str(role), env, cap, reason_code="RBAC_UNKNOWN_ROLE")
        if cap in self.matrix.capabilities(parsed, env):
            return AuthorizationResult.grant(parsed.value, env, cap)
        return AuthorizationResult.deny(parsed.value, env, cap)

    def require(
        self,
        role: Any,
        environment: str,
        capability: Capability,
        *,
        user_id: Optional[str] = None,
    ) -> AuthorizationResult:
        result = self.authorize(role, environment, capability)
        if result.allowed:
            return result
        error_cls = LockAuthorizationError if Capability(capability) == Capability.UNLOCK else AuthorizationError
        raise error_cls(
            f"role {result.role!r} lacks {result.capability.value!r} on {result.environment!r}",
            details={
                "user_id": user_id,
                "role": result.role,
                "environment": result.environment,
                "capability": result.capability.value,
                "rbac_reason_code": result.reason_code,
            },
        )
