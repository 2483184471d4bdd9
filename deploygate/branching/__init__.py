from deploygate.branching.matchers import ExactMatcher, GlobMatcher, Matcher, PrefixWildcardMatcher, compile_matcher
from deploygate.branching.resolver import BranchResolver
from deploygate.branching.types import BranchResolution, BranchRule

__all__ = [
    "BranchResolution",
    "BranchResolver",
    "BranchRule",
    "ExactMatcher",
    "GlobMatcher",
    "Matcher",
    "PrefixWildcardMatcher",
    "compile_matcher",
]
