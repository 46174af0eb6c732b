"""Field-level merge of two diverged versions of one entity.

``merge(local, remote, base)`` walks every field of the two versions and
applies the strategy declared for it in ``tbd_core.merge.strategies``.
When the common ancestor (*base*) is known, a field changed on only one
side simply takes that side's value; strategies are consulted only for
fields both sides changed.

Last-write-wins ordering compares, in order: ``updated_at``, ``version``,
content hash; a complete tie goes to the remote side.  The same inputs
always produce the same output on any machine: the merge reads no clock
and touches no files.  Every value a lossy strategy discards is returned
as an ``AtticEntry`` for the caller to persist.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field as dc_field
from typing import Any, Callable

from tbd_core.errors import ImmutableFieldError
from tbd_core.merge.strategies import MERGE_KEYS, MergeStrategy, strategy_for
from tbd_core.model.attic import AtticEntry, AtticSide, MergeSide
from tbd_core.model.entities import BaseEntity, repair_close_state
from tbd_core.store.codec import content_hash

logger = logging.getLogger(__name__)


class _Missing:
    """Marker for a key absent from one side's mapping."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


@dataclass(frozen=True)
class MergeResult:
    """Outcome of one entity merge.

    Attributes:
        merged: The reconciled entity (version = max + 1).
        attic_entries: One entry per discarded value.
        conflicted_fields: Fields both sides changed to different values.
    """

    merged: BaseEntity
    attic_entries: list[AtticEntry] = dc_field(default_factory=list)
    conflicted_fields: list[str] = dc_field(default_factory=list)


def _stable_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Merge context
# ---------------------------------------------------------------------------


@dataclass
class _MergeContext:
    entity_id: str
    entity_type: str
    local: AtticSide
    remote: AtticSide
    winner: MergeSide
    oldest: MergeSide | None
    has_base: bool
    attic: list[AtticEntry] = dc_field(default_factory=list)
    conflicts: list[str] = dc_field(default_factory=list)

    def pick(self, local_value: Any, remote_value: Any) -> tuple[Any, Any]:
        """Return ``(winning value, losing value)`` per LWW order."""
        if self.winner is MergeSide.LOCAL:
            return local_value, remote_value
        return remote_value, local_value

    def archive(
        self,
        path: str,
        strategy: MergeStrategy,
        lost: Any,
        kept: Any,
    ) -> None:
        if lost is MISSING:
            return
        winner = self.local if self.winner is MergeSide.LOCAL else self.remote
        loser = self.remote if self.winner is MergeSide.LOCAL else self.local
        self.attic.append(
            AtticEntry.build(
                entity_id=self.entity_id,
                entity_type=self.entity_type,
                field=path,
                strategy=strategy.value,
                lost_value=lost,
                kept_value=None if kept is MISSING else kept,
                loser=loser,
                winner=winner,
            )
        )

    def resolve_conflict(
        self,
        path: str,
        strategy: MergeStrategy,
        local_value: Any,
        remote_value: Any,
    ) -> Any:
        kept, lost = self.pick(local_value, remote_value)
        if kept is MISSING:
            # Deleted on the winning side, still present on the other:
            # keep the surviving value rather than lose it.
            return lost
        self.archive(path, strategy, lost, kept)
        return kept


def _three_way(
    local_value: Any, remote_value: Any, base_value: Any, has_base: bool
) -> tuple[bool, Any]:
    """Resolve trivially when possible.

    Returns ``(True, value)`` if the field needs no strategy.
    """
    if local_value == remote_value:
        return True, local_value
    if has_base:
        if local_value == base_value:
            return True, remote_value
        if remote_value == base_value:
            return True, local_value
    return False, None


# ---------------------------------------------------------------------------
# Strategy handlers
# ---------------------------------------------------------------------------


def _merge_immutable(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    if lv != rv:
        raise ImmutableFieldError(ctx.entity_id, name, lv, rv)
    return lv


def _merge_max_plus_one(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    return max(int(lv or 0), int(rv or 0)) + 1


def _merge_latest(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    present = [v for v in (lv, rv) if v is not MISSING and v is not None]
    return max(present) if present else None


def _merge_preserve_oldest(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    if ctx.oldest is MergeSide.LOCAL:
        return lv
    if ctx.oldest is MergeSide.REMOTE:
        return rv
    # Same creation stamp: prefer a recorded value, then the smaller one.
    present = [v for v in (lv, rv) if v is not MISSING and v is not None]
    if not present:
        return lv
    return min(present, key=_stable_key)


def _merge_last_write_wins(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    done, value = _three_way(lv, rv, bv, ctx.has_base)
    if done:
        return value
    ctx.conflicts.append(name)
    return ctx.resolve_conflict(name, MergeStrategy.LAST_WRITE_WINS, lv, rv)


def _merge_set_union(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    local_set = {_stable_key(v): v for v in (lv if isinstance(lv, list) else [])}
    remote_set = {_stable_key(v): v for v in (rv if isinstance(rv, list) else [])}
    if ctx.has_base:
        base_keys = {
            _stable_key(v) for v in (bv if isinstance(bv, list) else [])
        }
        keep = (
            (local_set.keys() & remote_set.keys())
            | (local_set.keys() - base_keys)
            | (remote_set.keys() - base_keys)
        )
    else:
        keep = local_set.keys() | remote_set.keys()
    merged = {**local_set, **remote_set}
    return [merged[k] for k in sorted(keep)]


def _group_by_key(items: Any, key_field: str) -> dict[str, list[Any]]:
    groups: dict[str, list[Any]] = {}
    if not isinstance(items, list):
        return groups
    for item in items:
        if not isinstance(item, dict) or key_field not in item:
            continue
        payload = {k: v for k, v in item.items() if k != key_field}
        groups.setdefault(str(item[key_field]), []).append(payload)
    return {
        key: sorted(payloads, key=_stable_key)
        for key, payloads in groups.items()
    }


def _merge_by_key(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    key_field = MERGE_KEYS.get(name, "id")
    local_groups = _group_by_key(lv, key_field)
    remote_groups = _group_by_key(rv, key_field)
    base_groups = _group_by_key(bv, key_field) if ctx.has_base else {}

    result: list[Any] = []
    conflicted = False
    for key in sorted(local_groups.keys() | remote_groups.keys()):
        l_entry = local_groups.get(key, MISSING)
        r_entry = remote_groups.get(key, MISSING)
        b_entry = base_groups.get(key, MISSING)
        done, value = _three_way(l_entry, r_entry, b_entry, ctx.has_base)
        if not done:
            if l_entry is MISSING or r_entry is MISSING:
                # Added on one side only, or removed against a modify.
                value = r_entry if l_entry is MISSING else l_entry
            else:
                conflicted = True
                value = ctx.resolve_conflict(
                    f"{name}[{key}]",
                    MergeStrategy.MERGE_BY_KEY,
                    l_entry,
                    r_entry,
                )
        if value is MISSING:
            continue
        result.extend({key_field: key, **payload} for payload in value)
    if conflicted:
        ctx.conflicts.append(name)
    return result


def _merge_append_only(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    records: dict[str, Any] = {}
    for side in (lv, rv):
        if isinstance(side, list):
            for record in side:
                records[_stable_key(record)] = record
    return [records[k] for k in sorted(records)]


def _merge_map(
    ctx: _MergeContext, path: str, lv: Any, rv: Any, bv: Any
) -> Any:
    """Merge two mappings key by key, recursing into nested mappings."""
    lmap = lv if isinstance(lv, dict) else {}
    rmap = rv if isinstance(rv, dict) else {}
    bmap = bv if isinstance(bv, dict) else {}
    result: dict[str, Any] = {}
    for key in sorted(lmap.keys() | rmap.keys()):
        l_item = lmap.get(key, MISSING)
        r_item = rmap.get(key, MISSING)
        b_item = bmap.get(key, MISSING)
        child = f"{path}.{key}"
        done, value = _three_way(l_item, r_item, b_item, ctx.has_base)
        if not done:
            if l_item is MISSING or r_item is MISSING:
                value = r_item if l_item is MISSING else l_item
            elif isinstance(l_item, dict) and isinstance(r_item, dict):
                value = _merge_map(ctx, child, l_item, r_item, b_item)
            else:
                ctx.conflicts.append(path.split(".", 1)[0])
                value = ctx.resolve_conflict(
                    child,
                    MergeStrategy.MERGE_BY_NAMESPACE,
                    l_item,
                    r_item,
                )
        if value is not MISSING:
            result[key] = value
    return result


def _merge_by_namespace(
    ctx: _MergeContext, name: str, lv: Any, rv: Any, bv: Any
) -> Any:
    return _merge_map(ctx, name, lv, rv, bv)


_Handler = Callable[[_MergeContext, str, Any, Any, Any], Any]

_STRATEGY_MAP: dict[MergeStrategy, _Handler] = {
    MergeStrategy.IMMUTABLE: _merge_immutable,
    MergeStrategy.MAX_PLUS_ONE: _merge_max_plus_one,
    MergeStrategy.LATEST: _merge_latest,
    MergeStrategy.PRESERVE_OLDEST: _merge_preserve_oldest,
    MergeStrategy.LAST_WRITE_WINS: _merge_last_write_wins,
    MergeStrategy.SET_UNION: _merge_set_union,
    MergeStrategy.MERGE_BY_KEY: _merge_by_key,
    MergeStrategy.APPEND_ONLY: _merge_append_only,
    MergeStrategy.MERGE_BY_NAMESPACE: _merge_by_namespace,
}


# ---------------------------------------------------------------------------
# Ordering helpers
# ---------------------------------------------------------------------------


def _side_info(entity: BaseEntity, side: MergeSide) -> AtticSide:
    return AtticSide(
        side=side,
        version=entity.version,
        updated_at=entity.updated_at,
        content_hash=content_hash(entity),
    )


def lww_winner(local: AtticSide, remote: AtticSide) -> MergeSide:
    """Deterministic last-write-wins order between two sides.

    Later ``updated_at`` wins, then higher ``version``, then the larger
    content hash; a complete tie goes to the remote side.
    """
    local_key = (local.updated_at, local.version, local.content_hash)
    remote_key = (remote.updated_at, remote.version, remote.content_hash)
    return MergeSide.LOCAL if local_key > remote_key else MergeSide.REMOTE


def _oldest_side(local: BaseEntity, remote: BaseEntity) -> MergeSide | None:
    if local.created_at < remote.created_at:
        return MergeSide.LOCAL
    if remote.created_at < local.created_at:
        return MergeSide.REMOTE
    return None


def _repair_invariants(fields: dict[str, Any]) -> None:
    """Restore invariants that span more than one field.

    The merged ``updated_at`` stands in for the close time so the
    result stays a pure function of the inputs.
    """
    repair_close_state(fields, fields.get("updated_at"))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def merge(
    local: BaseEntity,
    remote: BaseEntity,
    base: BaseEntity | None = None,
) -> MergeResult:
    """Reconcile two versions of the same entity.

    Args:
        local: This replica's version.
        remote: The other replica's version.
        base: Common ancestor, when known.  Without it every differing
            field is treated as changed on both sides.

    Returns:
        ``MergeResult`` with the merged entity and attic entries.

    Raises:
        ImmutableFieldError: If ``id`` or ``type`` differ.
    """
    if local.type != remote.type:
        raise ImmutableFieldError(local.id, "type", local.type, remote.type)
    if local.id != remote.id:
        raise ImmutableFieldError(local.id, "id", local.id, remote.id)

    local_side = _side_info(local, MergeSide.LOCAL)
    remote_side = _side_info(remote, MergeSide.REMOTE)

    if local_side.content_hash == remote_side.content_hash:
        # Same content, so nothing to merge; keep the higher write counter.
        newer = local if local.version > remote.version else remote
        return MergeResult(merged=newer)

    ctx = _MergeContext(
        entity_id=local.id,
        entity_type=local.type,
        local=local_side,
        remote=remote_side,
        winner=lww_winner(local_side, remote_side),
        oldest=_oldest_side(local, remote),
        has_base=base is not None and base.type == local.type,
    )

    local_fields = local.model_dump(mode="json")
    remote_fields = remote.model_dump(mode="json")
    base_fields = base.model_dump(mode="json") if ctx.has_base else {}

    merged: dict[str, Any] = {}
    for name in sorted(local_fields.keys() | remote_fields.keys()):
        strategy = strategy_for(local.type, name)
        value = _STRATEGY_MAP[strategy](
            ctx,
            name,
            local_fields.get(name, MISSING),
            remote_fields.get(name, MISSING),
            base_fields.get(name, MISSING),
        )
        if value is not MISSING:
            merged[name] = value

    _repair_invariants(merged)
    result = type(local).model_validate(merged)

    if ctx.attic:
        logger.debug(
            "Merged %s: %d value(s) archived (%s)",
            local.id,
            len(ctx.attic),
            ", ".join(e.field for e in ctx.attic),
        )
    return MergeResult(
        merged=result,
        attic_entries=ctx.attic,
        conflicted_fields=sorted(set(ctx.conflicts)),
    )
