import pytest

from deploygate.branching.matchers import (
    EXACT_BASE,
    ExactMatcher,
    GlobMatcher,
    PrefixWildcardMatcher,
    compile_matcher,
)
from deploygate.branching.resolver import TIE_BREAK_STRICT, BranchResolver
from deploygate.branching.types import BranchRule
from deploygate.errors import ConfigurationError
from deploygate.governance.config import default_governance_config
from deploygate.locks.types import LockType


def _rules(*pairs):
    return [BranchRule(pattern=p, environment=e, order=i) for i, (p, e) in enumerate(pairs)]


def test_compile_matcher_picks_matcher_by_pattern_shape():
    assert isinstance(compile_matcher("main"), ExactMatcher)
    assert isinstance(compile_matcher("feature/*"), PrefixWildcardMatcher)
    assert isinstance(compile_matcher("*"), PrefixWildcardMatcher)
    assert isinstance(compile_matcher("release/*/hotfix"), GlobMatcher)
    assert isinstance(compile_matcher("v?.*"), GlobMatcher)
    with pytest.raises(ValueError):
        compile_matcher("  ")


def test_prefix_wildcard_requires_a_suffix():
    matcher = compile_matcher("feature/*")
    assert matcher.matches("feature/login")
    assert not matcher.matches("feature/")
    assert not matcher.matches("features/login")
    assert compile_matcher("*").matches("anything")
    assert compile_matcher("*").specificity() == 0


def test_glob_segments():
    single = compile_matcher("team/*/release")
    assert single.matches("team/payments/release")
    assert not single.matches("team/payments/eu/release")
    deep = compile_matcher("team/**/release")
    assert deep.matches("team/payments/eu/release")
    assert compile_matcher("hotfix-?").matches("hotfix-7")
    assert not compile_matcher("hotfix-?").matches("hotfix-17")


def test_exact_outranks_any_wildcard():
    assert compile_matcher("main").specificity() >= EXACT_BASE
    assert compile_matcher("main").specificity() > compile_matcher("a-very-long-prefix/*").specificity()


def test_longest_prefix_wins_regardless_of_declaration_order():
    resolver = BranchResolver(_rules(("release/*", "uat"), ("release/hotfix/*", "staging"), ("*", "sandbox")))
    assert resolver.resolve("release/hotfix/42").environment == "staging"
    assert resolver.resolve("release/2.1").environment == "uat"
    assert resolver.resolve("chore/bump").environment == "sandbox"


def test_no_match_reports_reason_code():
    resolver = BranchResolver(_rules(("main", "staging")))
    resolution = resolver.resolve("feature/login")
    assert not resolution.matched
    assert resolution.environment is None
    assert resolution.reason_code == "NO_BRANCH_MAPPING"
    assert not resolver.resolve("").matched


def test_resolution_is_deterministic_for_the_same_snapshot():
    resolver = BranchResolver(_rules(("feature/*", "development"), ("feat*", "sandbox"), ("feature/x*", "qa")))
    first = [resolver.resolve(b).environment for b in ("feature/xy", "feature/a", "feat-1")]
    for _ in range(5):
        assert [resolver.resolve(b).environment for b in ("feature/xy", "feature/a", "feat-1")] == first
    assert first == ["qa", "development", "sandbox"]


def test_equal_specificity_uses_declaration_order():
    resolver = BranchResolver(_rules(("ab*", "first"), ("a?c*", "second")))
    # "ab*" prefix "ab" (2) vs glob literal prefix "a" (1): prefix wins outright.
    assert resolver.resolve("abcd").environment == "first"

    tied = BranchResolver(_rules(("team/*/api", "first"), ("team/*/a*", "second")))
    resolution = tied.resolve("team/x/api")
    assert resolution.environment == "first"
    assert resolution.candidates == ["team/*/api", "team/*/a*"]


def test_strict_mode_rejects_ambiguous_match():
    resolver = BranchResolver(_rules(("team/*/api", "first"), ("team/*/a*", "second")), tie_break=TIE_BREAK_STRICT)
    with pytest.raises(ConfigurationError) as excinfo:
        resolver.resolve("team/x/api")
    assert excinfo.value.reason_code == "CONFIG_INVALID"
    # Unambiguous branches still resolve.
    assert resolver.resolve("team/x/admin").environment == "second"


def test_unknown_tie_break_mode_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        BranchResolver([], tie_break="random")


def test_tagged_rule_only_applies_to_tagged_builds():
    rule = BranchRule(pattern="main (tagged)", environment="Production", lock_type="hard")
    assert rule.tagged
    assert rule.pattern == "main"
    assert rule.environment == "production"
    assert rule.lock_type == LockType.HARD_LOCKED
    assert rule.display_pattern == "main (tagged)"

    resolver = BranchResolver(default_governance_config().branch_rules)
    assert resolver.resolve("main").environment == "staging"
    tagged = resolver.resolve("main", tag="v1.4.0")
    assert tagged.environment == "production"
    assert tagged.rule.tagged


def test_exact_untagged_rule_outranks_tagged_wildcard():
    resolver = BranchResolver(_rules(("main", "staging"), ("** (tagged)", "production")))
    assert resolver.resolve("main", tag="v1").environment == "staging"
    assert resolver.resolve("release/2.0", tag="v2").environment == "production"

    same_pattern = BranchResolver(_rules(("main", "staging"), ("main (tagged)", "production")), tie_break=TIE_BREAK_STRICT)
    assert same_pattern.resolve("main", tag="v1").environment == "production"


def test_default_rules_cover_builtin_branch_model():
    resolver = BranchResolver(default_governance_config().branch_rules)
    assert resolver.resolve("feature/login").environment == "development"
    assert resolver.resolve("develop").environment == "development"
    assert resolver.resolve("release/2.0").environment == "uat"
    assert not resolver.resolve("hotfix/1").matched


def test_branch_rule_rejects_unknown_fields_and_roles():
    with pytest.raises(ValueError):
        BranchRule(pattern="main", environment="staging", approvers=2)
    with pytest.raises(ValueError):
        BranchRule(pattern="main", environment="staging", required_roles=["superuser"])
    rule = BranchRule(pattern="main", environment="staging", required_roles=["Admin", "admin", "approver"])
    assert [r.value for r in rule.required_roles] == ["admin", "approver"]
