from __future__ import annotations

from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Tuple

from deploygate.rbac.types import Capability, Role


WILDCARD_ENVIRONMENT = "*"

_ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)


def normalize_environment(environment: Any) -> str:
    return str(environment or "").strip().lower()


def _parse_capabilities(raw: Any) -> FrozenSet[Capability]:
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        values: Iterable[Any] = [raw]
    else:
        values = raw
    parsed = set()
    for value in values:
        text = str(value or "").strip().lower()
        if not text:
            continue
        if text == "*":
            parsed.update(_ALL_CAPABILITIES)
            continue
        parsed.add(Capability(text))
    return frozenset(parsed)


class PermissionMatrix:
    """
    Static (Role, Environment) -> capability-set lookup.

    A row for the ``*`` environment applies to environments without their own
    row. Roles missing from a row hold no capabilities there.
    """

    def __init__(self, grants: Mapping[Tuple[Role, str], Iterable[Capability]]):
        self._grants: Dict[Tuple[Role, str], FrozenSet[Capability]] = {
            (Role.parse(role), normalize_environment(env)): frozenset(caps)
            for (role, env), caps in grants.items()
        }
        self._environments = sorted({env for _, env in self._grants})

    @classmethod
    def from_config(cls, raw: Mapping[str, Mapping[str, Any]]) -> "PermissionMatrix":
        """
        Build from ``{environment: {role: [capability, ...]}}``.
        """
        grants: Dict[Tuple[Role, str], FrozenSet[Capability]] = {}
        for env, row in (raw or {}).items():
            if not isinstance(row, Mapping):
                raise ValueError(f"permission matrix row for {env!r} must be a mapping")
            for role, caps in row.items():
                grants[(Role.parse(role), normalize_environment(env))] = _parse_capabilities(caps)
        return cls(grants)

    @property
    def environments(self) -> List[str]:
        return list(self._environments)

    def has_environment(self, environment: str) -> bool:
        env = normalize_environment(environment)
        return any(key_env == env for _, key_env in self._grants)

    def capabilities(self, role: Role, environment: str) -> FrozenSet[Capability]:
        env = normalize_environment(environment)
        if self.has_environment(env):
            return self._grants.get((role, env), frozenset())
        return self._grants.get((role, WILDCARD_ENVIRONMENT), frozenset())

    def roles_with(self, environment: str, capability: Capability) -> List[Role]:
        return [role for role in Role if capability in self.capabilities(role, environment)]

    def to_dict(self) -> Dict[str, Dict[str, List[str]]]:
        out: Dict[str, Dict[str, List[str]]] = {}
        for (role, env), caps in sorted(self._grants.items(), key=lambda item: (item[0][1], item[0][0].value)):
            out.setdefault(env, {})[role.value] = sorted(c.value for c in caps)
        return out


def default_permission_matrix() -> PermissionMatrix:
    admin = ["view", "deploy", "unlock", "approve"]
    return PermissionMatrix.from_config(
        {
            "development": {
                "viewer": ["view"],
                "developer": ["view", "deploy"],
                "operator": ["view", "deploy", "unlock"],
                "approver": ["view", "approve"],
                "admin": admin,
            },
            "uat": {
                "viewer": ["view"],
                "developer": ["view"],
                "operator": ["view", "unlock"],
                "approver": ["view", "deploy", "approve"],
                "admin": admin,
            },
            "staging": {
                "viewer": ["view"],
                "developer": ["view"],
                "operator": ["view", "approve"],
                "approver": ["view", "deploy", "approve"],
                "admin": admin,
            },
            "production": {
                "viewer": ["view"],
                "developer": ["view"],
                "operator": ["view"],
                "approver": ["view", "approve"],
                "admin": admin,
            },
        }
    )
