"""Pydantic models for archived merge losers.

- ``AtticSide``: version metadata of one side of a merge.
- ``AtticEntry``: one discarded field value, immutable once recorded.
- ``RestorePatch``: a candidate change that re-applies an archived value.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any

from pydantic import BaseModel


class MergeSide(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @property
    def other(self) -> "MergeSide":
        return MergeSide.REMOTE if self is MergeSide.LOCAL else MergeSide.LOCAL


class AtticSide(BaseModel):
    """Which side of a merge, and the version it held.

    Attributes:
        side: ``local`` or ``remote``.
        version: Entity version on that side.
        updated_at: Entity ``updated_at`` on that side.
        content_hash: Content hash of that side's entity.
    """

    side: MergeSide
    version: int
    updated_at: str
    content_hash: str

    model_config = {"frozen": True}


class AtticEntry(BaseModel):
    """One value discarded by a merge.

    ``entry_id`` is derived from the entry's content, so replaying the
    same merge produces the same id and never a duplicate record.
    ``recorded_at`` is filled in by the archive when the entry is
    persisted; the merge itself is clock-free.
    """

    entry_id: str
    entity_id: str
    entity_type: str
    field: str
    strategy: str
    lost_value: Any = None
    kept_value: Any = None
    loser: AtticSide
    winner: AtticSide
    recorded_at: str | None = None

    model_config = {"frozen": True}

    @staticmethod
    def compute_id(
        entity_id: str,
        field: str,
        lost_value: Any,
        loser: AtticSide,
        winner: AtticSide,
    ) -> str:
        payload = json.dumps(
            [
                entity_id,
                field,
                lost_value,
                loser.model_dump(mode="json"),
                winner.model_dump(mode="json"),
            ],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def build(
        cls,
        *,
        entity_id: str,
        entity_type: str,
        field: str,
        strategy: str,
        lost_value: Any,
        kept_value: Any,
        loser: AtticSide,
        winner: AtticSide,
    ) -> "AtticEntry":
        return cls(
            entry_id=cls.compute_id(
                entity_id, field, lost_value, loser, winner
            ),
            entity_id=entity_id,
            entity_type=entity_type,
            field=field,
            strategy=strategy,
            lost_value=lost_value,
            kept_value=kept_value,
            loser=loser,
            winner=winner,
        )


class RestorePatch(BaseModel):
    """A candidate change produced by ``AtticArchive.restore()``.

    Nothing is written until the caller applies the patch through a
    normal update.
    """

    entry_id: str
    entity_id: str
    field: str
    value: Any = None

    model_config = {"frozen": True}
