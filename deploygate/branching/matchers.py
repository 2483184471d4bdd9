from __future__ import annotations

import re
from abc import ABC, abstractmethod

# Exact literals always outrank any wildcard, whatever the prefix length.
EXACT_BASE = 1_000_000


class Matcher(ABC):
    """
    One compiled branch pattern. Higher ``specificity()`` wins.
    """

    def __init__(self, pattern: str):
        self.pattern = pattern

    @abstractmethod
    def matches(self, branch: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def specificity(self) -> int:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.pattern!r})"


class ExactMatcher(Matcher):
    def matches(self, branch: str) -> bool:
        return branch == self.pattern

    def specificity(self) -> int:
        return EXACT_BASE + len(self.pattern)


class PrefixWildcardMatcher(Matcher):
    """
    ``feature/*`` style: literal prefix followed by a single trailing ``*``.
    The wildcard must consume at least one character; ``*`` alone matches everything.
    """

    def __init__(self, pattern: str):
        super().__init__(pattern)
        self.prefix = pattern[:-1]

    def matches(self, branch: str) -> bool:
        if not self.prefix:
            return bool(branch)
        return branch.startswith(self.prefix) and len(branch) > len(self.prefix)

    def specificity(self) -> int:
        return len(self.prefix)


class GlobMatcher(Matcher):
    """
    General glob: ``**`` crosses ``/``, ``*`` stays inside one segment, ``?`` is one character.
    """

    def __init__(self, pattern: str):
        super().__init__(pattern)
        self._regex = re.compile(_glob_to_regex(pattern))
        self._literal_prefix = re.split(r"[*?\[]", pattern, maxsplit=1)[0]

    def matches(self, branch: str) -> bool:
        return self._regex.fullmatch(branch) is not None

    def specificity(self) -> int:
        return len(self._literal_prefix)


def _glob_to_regex(pattern: str) -> str:
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            if pattern[i : i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


def compile_matcher(pattern: str) -> Matcher:
    text = str(pattern or "").strip()
    if not text:
        raise ValueError("branch pattern must be non-empty")
    wildcard_positions = [i for i, ch in enumerate(text) if ch in "*?"]
    if not wildcard_positions:
        return ExactMatcher(text)
    if wildcard_positions == [len(text) - 1] and text.endswith("*"):
        return PrefixWildcardMatcher(text)
    return GlobMatcher(text)


def sample_branch(pattern: str) -> str:
    """
    A concrete branch name the pattern matches, used to detect overlapping rules.
    """
    return re.sub(r"[*?]+", "x", pattern)
