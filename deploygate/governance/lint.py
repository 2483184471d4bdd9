from __future__ import annotations

from typing import Any, Dict, List, Optional

from deploygate.branching.matchers import compile_matcher, sample_branch
from deploygate.branching.resolver import TIE_BREAK_STRICT, compile_rules
from deploygate.governance.config import GovernanceConfig
from deploygate.rbac.matrix import WILDCARD_ENVIRONMENT
from deploygate.rbac.types import Capability


def _issue(
    severity: str,
    code: str,
    message: str,
    *,
    pattern: Optional[str] = None,
    environment: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    issue = {
        "severity": severity,
        "code": code,
        "message": message,
    }
    if pattern:
        issue["pattern"] = pattern
    if environment:
        issue["environment"] = environment
    if metadata:
        issue["metadata"] = metadata
    return issue


def _patterns_overlap(a: str, b: str) -> bool:
    return compile_matcher(a).matches(sample_branch(b)) or compile_matcher(b).matches(sample_branch(a))


def lint_governance_config(config: GovernanceConfig) -> Dict[str, Any]:
    issues: List[Dict[str, Any]] = []
    rules = config.branch_rules

    seen: Dict[str, int] = {}
    for rule in rules:
        key = rule.display_pattern
        seen[key] = seen.get(key, 0) + 1
    for pattern, count in seen.items():
        if count > 1:
            issues.append(
                _issue(
                    "ERROR",
                    "DUPLICATE_PATTERN",
                    f"Branch pattern `{pattern}` is declared {count} times.",
                    pattern=pattern,
                )
            )

    compiled = compile_rules(rules)
    overlap_severity = "ERROR" if config.tie_break == TIE_BREAK_STRICT else "WARNING"
    for index, current in enumerate(compiled):
        for prior in compiled[:index]:
            if prior.specificity() != current.specificity():
                continue
            if prior.rule.tagged != current.rule.tagged:
                continue
            if prior.rule.display_pattern == current.rule.display_pattern:
                continue
            if not _patterns_overlap(prior.rule.pattern, current.rule.pattern):
                continue
            issues.append(
                _issue(
                    overlap_severity,
                    "AMBIGUOUS_OVERLAP",
                    f"Rules `{prior.rule.display_pattern}` and `{current.rule.display_pattern}` overlap "
                    f"at equal specificity; `{prior.rule.display_pattern}` wins by declaration order.",
                    pattern=current.rule.display_pattern,
                    metadata={
                        "conflicts_with": prior.rule.display_pattern,
                        "specificity": current.specificity(),
                        "tie_break": config.tie_break,
                    },
                )
            )

    matrix = config.permission_matrix()
    has_fallback = matrix.has_environment(WILDCARD_ENVIRONMENT)
    for environment in config.environments():
        if not matrix.has_environment(environment) and not has_fallback:
            issues.append(
                _issue(
                    "ERROR",
                    "UNKNOWN_ENVIRONMENT",
                    f"Environment `{environment}` has branch rules but no permission matrix row.",
                    environment=environment,
                )
            )

    for rule in rules:
        if not rule.requires_approval:
            continue
        approvers = set(matrix.roles_with(rule.environment, Capability.APPROVE))
        eligible = [role for role in rule.required_roles if role in approvers] if rule.required_roles else list(approvers)
        unusable = [role.value for role in rule.required_roles if role not in approvers]
        if unusable and eligible:
            issues.append(
                _issue(
                    "WARNING",
                    "REQUIRED_ROLE_CANNOT_APPROVE",
                    f"Rule `{rule.display_pattern}` requires roles without approve on `{rule.environment}`: "
                    f"{', '.join(unusable)}.",
                    pattern=rule.display_pattern,
                    environment=rule.environment,
                    metadata={"roles": unusable},
                )
            )
        if not eligible:
            issues.append(
                _issue(
                    "ERROR",
                    "APPROVAL_UNSATISFIABLE",
                    f"Rule `{rule.display_pattern}` requires approval but no role can approve on `{rule.environment}`.",
                    pattern=rule.display_pattern,
                    environment=rule.environment,
                )
            )

    for environment in config.locks.windows:
        if environment not in config.environments():
            issues.append(
                _issue(
                    "WARNING",
                    "WINDOW_FOR_UNMAPPED_ENVIRONMENT",
                    f"Lock windows declared for `{environment}`, which no branch rule targets.",
                    environment=environment,
                )
            )

    error_count = sum(1 for issue in issues if issue["severity"] == "ERROR")
    warning_count = sum(1 for issue in issues if issue["severity"] == "WARNING")
    return {
        "ok": error_count == 0,
        "source": config.source,
        "rule_count": len(rules),
        "error_count": error_count,
        "warning_count": warning_count,
        "issues": issues,
    }


def format_lint_report(report: Dict[str, Any]) -> str:
    status = "PASS" if report.get("ok") else "FAIL"
    lines = [
        f"Governance Lint: {status}",
        f"Source: {report.get('source')}",
        f"Rules: {report.get('rule_count', 0)}",
        f"Errors: {report.get('error_count', 0)}",
        f"Warnings: {report.get('warning_count', 0)}",
    ]
    issues = report.get("issues") or []
    if issues:
        lines.append("")
        lines.append("Issues:")
        for issue in issues:
            location = ""
            if issue.get("pattern"):
                location += f" pattern={issue['pattern']}"
            if issue.get("environment"):
                location += f" env={issue['environment']}"
            lines.append(f"- [{issue.get('severity')}] {issue.get('code')}: {issue.get('message')}{location}")
    return "\n".join(lines)
