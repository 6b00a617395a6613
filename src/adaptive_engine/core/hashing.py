"""
Deterministic hashing for request identity.

Canonical keys must be identical for semantically identical requests across
processes and Python versions, so everything is rendered to canonical JSON
(recursively sorted keys, compact separators) before SHA-256.

Examples:
    >>> canonical_json({"b": 1, "a": {"d": 2, "c": 3}})
    '{"a":{"c":3,"d":2},"b":1}'
    >>> stable_digest({"a": 1}) == stable_digest({"a": 1})
    True

Tags:
    hashing, deduplication, canonicalization
"""

import hashlib
import json
from collections.abc import Mapping, Set
from typing import Any


def _normalize(value: Any) -> Any:
    """Turn a value into something json.dumps renders deterministically."""
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (Set, frozenset)):
        return sorted((_normalize(v) for v in value), key=canonical_json)
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def canonical_json(value: Any) -> str:
    """Render ``value`` as canonical JSON (sorted keys, no whitespace)."""
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def stable_digest(value: Any) -> str:
    """Full SHA-256 hex digest of the canonical JSON form of ``value``."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


__all__ = ["canonical_json", "stable_digest"]
