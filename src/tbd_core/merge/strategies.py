"""Per-field merge strategy tables.

The table for each entity type is declared once, here.  Fields that are
not listed (including fields added by newer writers and unknown to this
version) merge with ``last_write_wins``.
"""

from __future__ import annotations

from enum import Enum


class MergeStrategy(str, Enum):
    """How one field of two diverged entity versions is reconciled."""

    IMMUTABLE = "immutable"
    MAX_PLUS_ONE = "max_plus_one"
    LATEST = "latest"
    PRESERVE_OLDEST = "preserve_oldest"
    LAST_WRITE_WINS = "last_write_wins"
    SET_UNION = "set_union"
    MERGE_BY_KEY = "merge_by_key"
    APPEND_ONLY = "append_only"
    MERGE_BY_NAMESPACE = "merge_by_namespace"


DEFAULT_STRATEGY = MergeStrategy.LAST_WRITE_WINS

# Strategies that can discard a value and therefore write attic entries.
LOSSY_STRATEGIES = frozenset(
    {
        MergeStrategy.LAST_WRITE_WINS,
        MergeStrategy.MERGE_BY_KEY,
        MergeStrategy.MERGE_BY_NAMESPACE,
    }
)

_COMMON: dict[str, MergeStrategy] = {
    "type": MergeStrategy.IMMUTABLE,
    "id": MergeStrategy.IMMUTABLE,
    "version": MergeStrategy.MAX_PLUS_ONE,
    "created_at": MergeStrategy.PRESERVE_OLDEST,
    "created_by": MergeStrategy.PRESERVE_OLDEST,
    "updated_at": MergeStrategy.LATEST,
    "extensions": MergeStrategy.MERGE_BY_NAMESPACE,
}

FIELD_STRATEGIES: dict[str, dict[str, MergeStrategy]] = {
    "is": {
        **_COMMON,
        "labels": MergeStrategy.SET_UNION,
        "dependencies": MergeStrategy.MERGE_BY_KEY,
    },
    "ag": {
        **_COMMON,
        "capabilities": MergeStrategy.SET_UNION,
        "last_seen_at": MergeStrategy.LATEST,
    },
    "ms": {
        **_COMMON,
        "sender": MergeStrategy.IMMUTABLE,
        "recipients": MergeStrategy.SET_UNION,
        "acks": MergeStrategy.APPEND_ONLY,
    },
}

# merge_by_key fields -> the key inside each list element
MERGE_KEYS: dict[str, str] = {
    "dependencies": "target",
}


def strategy_for(entity_type: str, field: str) -> MergeStrategy:
    """Return the strategy for *field* of entities with prefix *entity_type*."""
    return FIELD_STRATEGIES.get(entity_type, _COMMON).get(
        field, DEFAULT_STRATEGY
    )
