from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


def build_identity_alias_map(raw_aliases: Any) -> Dict[str, str]:
    """
    ``{canonical: [alias, ...]}`` -> ``{alias: canonical}``, all lowercased.
    """
    alias_map: Dict[str, str] = {}
    if not isinstance(raw_aliases, Mapping):
        return alias_map
    for canonical, raw_values in raw_aliases.items():
        canonical_text = str(canonical or "").strip().lower()
        if not canonical_text:
            continue
        alias_map[canonical_text] = canonical_text
        if isinstance(raw_values, (list, tuple, set, frozenset)):
            values = raw_values
        else:
            values = [raw_values]
        for raw in values:
            alias = str(raw or "").strip().lower()
            if alias:
                alias_map[alias] = canonical_text
    return alias_map


def normalize_actor(value: Any, *, alias_map: Optional[Mapping[str, str]] = None) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    return alias_map.get(lowered, lowered) if alias_map else lowered


def same_actor(a: Any, b: Any, *, alias_map: Optional[Mapping[str, str]] = None) -> bool:
    left = normalize_actor(a, alias_map=alias_map)
    return left is not None and left == normalize_actor(b, alias_map=alias_map)
