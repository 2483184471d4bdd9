from deploygate.governance.config import (
    GovernanceConfig,
    default_governance_config,
    load_governance_config,
    parse_governance_config,
)
from deploygate.governance.lint import format_lint_report, lint_governance_config

__all__ = [
    "GovernanceConfig",
    "default_governance_config",
    "format_lint_report",
    "lint_governance_config",
    "load_governance_config",
    "parse_governance_config",
]
