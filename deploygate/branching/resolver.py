from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from deploygate.branching.matchers import Matcher, compile_matcher
from deploygate.branching.types import BranchResolution, BranchRule
from deploygate.errors import ConfigurationError


logger = logging.getLogger(__name__)

TIE_BREAK_DECLARATION_ORDER = "declaration_order"
TIE_BREAK_STRICT = "strict"
TIE_BREAK_MODES = (TIE_BREAK_DECLARATION_ORDER, TIE_BREAK_STRICT)


@dataclass(frozen=True)
class CompiledRule:
    rule: BranchRule
    matcher: Matcher
    index: int

    def specificity(self) -> int:
        return self.matcher.specificity()

    def matches(self, branch: str, tag: Optional[str]) -> bool:
        if self.rule.tagged and not tag:
            return False
        return self.matcher.matches(branch)

    def sort_key(self):
        return (-self.specificity(), not self.rule.tagged, self.rule.order, self.index)


def compile_rules(rules: Sequence[BranchRule]) -> List[CompiledRule]:
    compiled = [CompiledRule(rule=rule, matcher=compile_matcher(rule.pattern), index=i) for i, rule in enumerate(rules)]
    return sorted(compiled, key=CompiledRule.sort_key)


class BranchResolver:
    """
    Resolve a branch name to at most one environment.

    Candidates rank by specificity (exact literal, then longest literal prefix,
    then bare wildcard). At equal specificity a tagged rule outranks an untagged
    one, then ranking falls back to the rule's ``order``
    and then its position in the list under ``declaration_order``; under
    ``strict`` such a tie is a configuration error.
    """

    def __init__(self, rules: Sequence[BranchRule], *, tie_break: str = TIE_BREAK_DECLARATION_ORDER):
        if tie_break not in TIE_BREAK_MODES:
            raise ConfigurationError(
                f"unknown tie_break mode: {tie_break!r}",
                reason_code="CONFIG_INVALID",
                details={"allowed": list(TIE_BREAK_MODES)},
            )
        self.tie_break = tie_break
        self._compiled = compile_rules(rules)

    @property
    def rules(self) -> List[BranchRule]:
        return [c.rule for c in self._compiled]

    def candidates(self, branch: str, tag: Optional[str] = None) -> List[CompiledRule]:
        name = str(branch or "").strip()
        if not name:
            return []
        return [c for c in self._compiled if c.matches(name, tag)]

    def resolve(self, branch: str, tag: Optional[str] = None) -> BranchResolution:
        name = str(branch or "").strip()
        matched = self.candidates(name, tag)
        if not matched:
            logger.info("branch %r matched no rule", name)
            return BranchResolution.no_match(name)

        top = matched[0]
        if self.tie_break == TIE_BREAK_STRICT and len(matched) > 1:
            runner_up = matched[1]
            if (
                runner_up.specificity() == top.specificity()
                and runner_up.rule.tagged == top.rule.tagged
                and runner_up.rule.environment != top.rule.environment
            ):
                raise ConfigurationError(
                    f"branch {name!r} matches rules of equal specificity",
                    reason_code="CONFIG_INVALID",
                    details={"patterns": [top.rule.display_pattern, runner_up.rule.display_pattern]},
                )
        return BranchResolution(
            branch=name,
            environment=top.rule.environment,
            rule=top.rule,
            specificity=top.specificity(),
            candidates=[c.rule.display_pattern for c in matched],
        )
