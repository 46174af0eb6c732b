"""Deterministic field-level merging of diverged entity versions."""

from .engine import MergeResult, lww_winner, merge
from .strategies import FIELD_STRATEGIES, MergeStrategy, strategy_for

__all__ = [
    "FIELD_STRATEGIES",
    "MergeResult",
    "MergeStrategy",
    "lww_winner",
    "merge",
    "strategy_for",
]
