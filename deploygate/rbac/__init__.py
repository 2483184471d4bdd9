from deploygate.rbac.authorizer import RBACAuthorizer
from deploygate.rbac.matrix import PermissionMatrix, default_permission_matrix
from deploygate.rbac.types import AuthorizationResult, Capability, Role

__all__ = [
    "AuthorizationResult",
    "Capability",
    "PermissionMatrix",
    "RBACAuthorizer",
    "Role",
    "default_permission_matrix",
]
