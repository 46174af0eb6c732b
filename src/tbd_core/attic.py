"""Append-only archive of values discarded by merges.

Entries live under ``<data_dir>/attic/<entity-id>/<entry-id>.yml`` and
sync like any other data file.  An entry is written once with an
exclusive create and never rewritten; recording an entry whose id
already exists is a no-op, so replaying a merge cannot duplicate it.

Restoring is explicit: ``restore()`` only returns a ``RestorePatch``,
and ``patch_changes()`` turns it into field changes the caller applies
with a normal update.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from tbd_core.errors import NotFoundError, SchemaValidationError
from tbd_core.merge.strategies import MERGE_KEYS
from tbd_core.model.attic import AtticEntry, RestorePatch
from tbd_core.model.entities import BaseEntity, format_timestamp
from tbd_core.store import atomic
from tbd_core.store.entity_store import ATTIC_DIR

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_KEYED_PATH = re.compile(r"^(?P<field>[A-Za-z0-9_]+)\[(?P<key>.+)\]$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dump_entry(entry: AtticEntry) -> bytes:
    return yaml.safe_dump(
        entry.model_dump(mode="json"),
        sort_keys=True,
        allow_unicode=True,
        default_flow_style=False,
    ).encode("utf-8")


class AtticArchive:
    """Record, list and restore archived merge losers.

    Args:
        data_dir: Root of the synced data tree.
        clock: Returns the current time; used only for ``recorded_at``.
    """

    def __init__(self, data_dir: Path, clock: Clock | None = None) -> None:
        self._root = data_dir / ATTIC_DIR
        self._clock = clock or _utc_now

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _entry_path(self, entity_id: str, entry_id: str) -> Path:
        return self._root / entity_id / f"{entry_id}.yml"

    def _entry_files(self, entity_id: str | None) -> list[Path]:
        if not self._root.is_dir():
            return []
        if entity_id is not None:
            return sorted((self._root / entity_id).glob("*.yml"))
        return sorted(self._root.glob("*/*.yml"))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, entry: AtticEntry) -> AtticEntry:
        """Persist *entry*, stamping ``recorded_at``.

        Returns:
            The stored entry (the existing one if already recorded).
        """
        path = self._entry_path(entry.entity_id, entry.entry_id)
        if path.exists():
            logger.debug("Attic entry %s already recorded", entry.entry_id)
            return self._load(path)

        stamped = entry.model_copy(
            update={"recorded_at": format_timestamp(self._clock())}
        )
        try:
            atomic.create_exclusive(path, _dump_entry(stamped))
        except FileExistsError:
            return self._load(path)
        logger.info(
            "Archived %s.%s (lost %s side)",
            entry.entity_id,
            entry.field,
            entry.loser.side.value,
        )
        return stamped

    def record_all(self, entries: list[AtticEntry]) -> list[AtticEntry]:
        return [self.record(entry) for entry in entries]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _load(self, path: Path) -> AtticEntry:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            return AtticEntry.model_validate(data)
        except (yaml.YAMLError, ValidationError) as exc:
            raise SchemaValidationError(str(exc), str(path)) from exc

    def list(self, entity_id: str | None = None) -> list[AtticEntry]:
        """Return entries, newest first."""
        entries = []
        for path in self._entry_files(entity_id):
            try:
                entries.append(self._load(path))
            except SchemaValidationError as exc:
                logger.warning("Skipping unreadable attic entry: %s", exc)
        entries.sort(
            key=lambda e: (e.recorded_at or "", e.loser.updated_at, e.entry_id),
            reverse=True,
        )
        return entries

    def show(self, entry_id: str) -> AtticEntry:
        """Return one entry by id.

        Raises:
            NotFoundError: If no entry has that id.
        """
        for path in self._entry_files(None):
            if path.stem == entry_id:
                return self._load(path)
        raise NotFoundError(entry_id)

    def restore(self, entry_id: str) -> RestorePatch:
        """Materialize an archived value as a candidate patch."""
        entry = self.show(entry_id)
        return RestorePatch(
            entry_id=entry.entry_id,
            entity_id=entry.entity_id,
            field=entry.field,
            value=entry.lost_value,
        )


# ---------------------------------------------------------------------------
# Applying patches
# ---------------------------------------------------------------------------


def patch_changes(entity: BaseEntity, patch: RestorePatch) -> dict[str, Any]:
    """Translate *patch* into top-level field changes for *entity*.

    Supported field paths:

    * ``priority`` -- a top-level field;
    * ``extensions.<ns>.<key>`` -- a value inside a namespace map;
    * ``dependencies[<target>]`` -- one keyed group of a keyed list.
    """
    if patch.entity_id != entity.id:
        raise ValueError(
            f"Patch for {patch.entity_id} cannot apply to {entity.id}"
        )
    current = entity.model_dump(mode="json")

    keyed = _KEYED_PATH.match(patch.field)
    if keyed:
        field, key = keyed.group("field"), keyed.group("key")
        key_field = MERGE_KEYS.get(field, "id")
        items = [
            item
            for item in current.get(field) or []
            if str(item.get(key_field)) != key
        ]
        for payload in patch.value or []:
            items.append({key_field: key, **payload})
        return {field: items}

    if "." in patch.field:
        top, *rest = patch.field.split(".")
        tree = copy.deepcopy(current.get(top) or {})
        node = tree
        for part in rest[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[rest[-1]] = patch.value
        return {top: tree}

    return {patch.field: patch.value}
