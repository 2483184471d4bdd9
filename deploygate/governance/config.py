from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from deploygate.branching.resolver import TIE_BREAK_DECLARATION_ORDER, TIE_BREAK_MODES
from deploygate.branching.types import BranchRule
from deploygate.config import get_default_approval_ttl_hours, get_governance_config_path
from deploygate.errors import ConfigurationError
from deploygate.governance.actors import build_identity_alias_map
from deploygate.locks.types import LockType, ScheduledWindow
from deploygate.rbac.matrix import PermissionMatrix, default_permission_matrix, normalize_environment
from deploygate.utils.file_cache import ParsedFileCache


logger = logging.getLogger(__name__)

_CONFIG_CACHE = ParsedFileCache(max_files=32, ttl_seconds=30.0)


class LocksConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ticket_required_environments: List[str] = Field(default_factory=lambda: ["production", "preprod"])
    defaults: Dict[str, LockType] = Field(default_factory=dict)
    windows: Dict[str, List[ScheduledWindow]] = Field(default_factory=dict)

    @field_validator("ticket_required_environments")
    @classmethod
    def _envs(cls, value: List[str]) -> List[str]:
        return [normalize_environment(v) for v in value if normalize_environment(v)]

    @field_validator("defaults", mode="before")
    @classmethod
    def _defaults(cls, value: Any) -> Dict[str, LockType]:
        return {normalize_environment(k): LockType.parse(v) for k, v in (value or {}).items()}

    @field_validator("windows", mode="before")
    @classmethod
    def _windows(cls, value: Any) -> Any:
        return {normalize_environment(k): v for k, v in (value or {}).items()}


class ApprovalDefaults(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ttl_hours: int = Field(default_factory=get_default_approval_ttl_hours, ge=1)
    block_self_approval: bool = True
    require_distinct_approvers: bool = True


class GovernanceConfig(BaseModel):
    """
    Branch rules, permission matrix, lock defaults and approval defaults for one deployment.
    """

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    tie_break: str = TIE_BREAK_DECLARATION_ORDER
    branch_rules: List[BranchRule] = Field(default_factory=list)
    permissions: Optional[Dict[str, Dict[str, Any]]] = None
    locks: LocksConfig = Field(default_factory=LocksConfig)
    approvals: ApprovalDefaults = Field(default_factory=ApprovalDefaults)
    identity_aliases: Dict[str, List[str]] = Field(default_factory=dict)
    source: Optional[str] = None

    @field_validator("tie_break")
    @classmethod
    def _tie_break(cls, value: str) -> str:
        mode = str(value or "").strip().lower()
        if mode not in TIE_BREAK_MODES:
            raise ValueError(f"tie_break must be one of {list(TIE_BREAK_MODES)}")
        return mode

    def permission_matrix(self) -> PermissionMatrix:
        if self.permissions is None:
            return default_permission_matrix()
        return PermissionMatrix.from_config(self.permissions)

    def alias_map(self) -> Dict[str, str]:
        return build_identity_alias_map(self.identity_aliases)

    def environments(self) -> List[str]:
        seen: List[str] = []
        for rule in self.branch_rules:
            if rule.environment not in seen:
                seen.append(rule.environment)
        return seen

    def default_lock_type(self, environment: str) -> LockType:
        """
        Lock state of an environment nobody has touched yet: an explicit
        ``locks.defaults`` entry, else the most restrictive ``lock_type`` among
        the rules targeting it.
        """
        env = normalize_environment(environment)
        if env in self.locks.defaults:
            return self.locks.defaults[env]
        chosen = LockType.UNLOCKED
        for rule in self.branch_rules:
            if rule.environment == env and rule.lock_type.severity > chosen.severity:
                chosen = rule.lock_type
        return chosen

    def requires_ticket(self, environment: str) -> bool:
        return normalize_environment(environment) in self.locks.ticket_required_environments


def default_governance_config() -> GovernanceConfig:
    return GovernanceConfig(
        branch_rules=[
            BranchRule(pattern="feature/*", environment="development"),
            BranchRule(pattern="develop", environment="development"),
            BranchRule(
                pattern="release/*",
                environment="uat",
                lock_type=LockType.SOFT_LOCKED,
                requires_approval=True,
                required_approvers=1,
                required_roles=["approver", "admin"],
            ),
            BranchRule(
                pattern="main",
                environment="staging",
                lock_type=LockType.SOFT_LOCKED,
                requires_approval=True,
                required_approvers=1,
                required_roles=["operator", "approver", "admin"],
            ),
            BranchRule(
                pattern="main (tagged)",
                environment="production",
                lock_type=LockType.HARD_LOCKED,
                requires_approval=True,
                required_approvers=2,
                required_roles=["approver", "admin"],
            ),
        ],
        source="builtin",
    )


def parse_governance_config(raw: Any, *, source: Optional[str] = None) -> GovernanceConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(
            "governance config must be a mapping",
            reason_code="CONFIG_INVALID",
            details={"source": source},
        )
    data = dict(raw)
    rules = data.get("branch_rules")
    if isinstance(rules, list):
        # Position in the file is the declaration order unless a rule sets one.
        data["branch_rules"] = [
            {**rule, "order": rule.get("order", index)} if isinstance(rule, dict) else rule
            for index, rule in enumerate(rules)
        ]
    data.setdefault("source", source)
    try:
        return GovernanceConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(
            f"invalid governance config: {exc.error_count()} error(s)",
            reason_code="CONFIG_INVALID",
            details={"source": source, "errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def load_governance_config(path: Optional[str] = None, *, use_cache: bool = True) -> GovernanceConfig:
    """
    Load the YAML governance config, falling back to the built-in defaults when
    the file does not exist. Parsed configs are cached per file fingerprint.
    """
    config_path = path or get_governance_config_path()
    if not config_path or not os.path.exists(config_path):
        return default_governance_config()

    fingerprint, cached = _CONFIG_CACHE.lookup(config_path)
    if use_cache and cached is not None:
        return cached

    with open(config_path, "r", encoding="utf-8") as handle:
        try:
            raw = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigurationError(
                f"governance config is not valid YAML: {exc}",
                reason_code="CONFIG_INVALID",
                details={"source": config_path},
            ) from exc
    parsed = parse_governance_config(raw, source=config_path)
    logger.info("loaded governance config %s (%s rules)", config_path, len(parsed.branch_rules))
    _CONFIG_CACHE.store(config_path, fingerprint, parsed)
    return parsed


def clear_config_cache() -> None:
    _CONFIG_CACHE.clear()
