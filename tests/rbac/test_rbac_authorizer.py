import pytest

from deploygate.errors import AuthorizationError, LockAuthorizationError
from deploygate.rbac.authorizer import RBACAuthorizer
from deploygate.rbac.matrix import PermissionMatrix, default_permission_matrix
from deploygate.rbac.types import Capability, Role


@pytest.fixture
def authorizer():
    return RBACAuthorizer(default_permission_matrix())


def test_capabilities_come_from_the_matrix_not_role_rank(authorizer):
    # Operators may unlock development but not approve there; approvers the reverse.
    assert authorizer.authorize("operator", "development", Capability.UNLOCK).allowed
    assert not authorizer.authorize("operator", "development", Capability.APPROVE).allowed
    assert authorizer.authorize("approver", "development", Capability.APPROVE).allowed
    assert not authorizer.authorize("approver", "development", Capability.UNLOCK).allowed


def test_production_deploy_is_admin_only(authorizer):
    allowed = [role for role in Role if authorizer.authorize(role, "Production", Capability.DEPLOY).allowed]
    assert allowed == [Role.ADMIN]


def test_denial_carries_reason_code(authorizer):
    result = authorizer.authorize("developer", "staging", Capability.DEPLOY)
    assert not result.allowed
    assert result.reason_code == "RBAC_DENIED"
    assert result.environment == "staging"

    unknown = authorizer.authorize("root", "staging", Capability.VIEW)
    assert not unknown.allowed
    assert unknown.reason_code == "RBAC_UNKNOWN_ROLE"


def test_unmapped_environment_grants_nothing(authorizer):
    assert not authorizer.authorize("admin", "moon-base", Capability.VIEW).allowed


def test_require_raises_typed_errors(authorizer):
    assert authorizer.require("admin", "production", Capability.UNLOCK).allowed
    with pytest.raises(LockAuthorizationError) as excinfo:
        authorizer.require("developer", "production", Capability.UNLOCK, user_id="dev1")
    assert excinfo.value.details["user_id"] == "dev1"
    with pytest.raises(AuthorizationError) as excinfo:
        authorizer.require("viewer", "staging", Capability.DEPLOY)
    assert not isinstance(excinfo.value, LockAuthorizationError)


def test_matrix_round_trips_to_dict():
    matrix = PermissionMatrix.from_config({"qa": {"Developer": "deploy", "admin": ["*"]}})
    assert matrix.to_dict() == {"qa": {"admin": ["approve", "deploy", "unlock", "view"], "developer": ["deploy"]}}
    assert matrix.roles_with("qa", Capability.DEPLOY) == [Role.DEVELOPER, Role.ADMIN]
    with pytest.raises(ValueError):
        PermissionMatrix.from_config({"qa": ["admin"]})
    with pytest.raises(ValueError):
        PermissionMatrix.from_config({"qa": {"admin": ["fly"]}})
