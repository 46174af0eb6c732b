"""File-per-entity store.

Layout under the data directory (mirrored 1:1 on the sync branch)::

    meta.yml
    entities/<prefix>/<id>.md     one canonical file per entity
    tombstones/<prefix>/<id>      marker left behind by delete()
    attic/<entity-id>/<entry>.yml archived merge losers

Every write is atomic (see ``tbd_core.store.atomic``); there are no
locks.  The optional ``LocalIndex`` only speeds up listing.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from pathlib import Path

from pydantic import ValidationError

from tbd_core.errors import DecodeError, IdCollisionError, NotFoundError
from tbd_core.model.entities import ENTITY_TYPES, BaseEntity, resolve_entity_type
from tbd_core.model.ids import id_prefix
from tbd_core.store import atomic
from tbd_core.store.codec import blob_id, decode, encode
from tbd_core.store.index import LocalIndex

logger = logging.getLogger(__name__)

ENTITIES_DIR = "entities"
TOMBSTONES_DIR = "tombstones"
ATTIC_DIR = "attic"
ENTITY_SUFFIX = ".md"

Predicate = Callable[[BaseEntity], bool]


class EntityListing:
    """Lazy, restartable sequence of entities.

    Each iteration rescans the directory, so iterating twice reflects
    writes made in between.
    """

    def __init__(
        self,
        store: "EntityStore",
        prefixes: list[str],
        predicate: Predicate | None,
    ) -> None:
        self._store = store
        self._prefixes = prefixes
        self._predicate = predicate

    def __iter__(self) -> Iterator[BaseEntity]:
        for prefix in self._prefixes:
            for path in self._store._entity_files(prefix):
                entity = self._store._load_listed(path)
                if entity is None:
                    continue
                if self._predicate is None or self._predicate(entity):
                    yield entity
        self._store.flush_index()

    def ids(self) -> list[str]:
        return [entity.id for entity in self]


class EntityStore:
    """Read and write entities under *data_dir*.

    Args:
        data_dir: Root of the synced data tree.
        index: Optional local index; listing works without it.
    """

    def __init__(
        self, data_dir: Path, index: LocalIndex | None = None
    ) -> None:
        self.data_dir = data_dir
        self._index = index

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def entity_path(self, entity_id: str) -> Path:
        prefix = id_prefix(entity_id)
        return (
            self.data_dir / ENTITIES_DIR / prefix / f"{entity_id}{ENTITY_SUFFIX}"
        )

    def tombstone_path(self, entity_id: str) -> Path:
        return self.data_dir / TOMBSTONES_DIR / id_prefix(entity_id) / entity_id

    def relpath(self, path: Path) -> str:
        return path.relative_to(self.data_dir).as_posix()

    def _entity_files(self, prefix: str) -> list[Path]:
        directory = self.data_dir / ENTITIES_DIR / prefix
        if not directory.is_dir():
            return []
        return sorted(
            p
            for p in directory.iterdir()
            if p.suffix == ENTITY_SUFFIX
            and not p.name.startswith(atomic.TEMP_PREFIX)
        )

    # ------------------------------------------------------------------
    # Entity operations
    # ------------------------------------------------------------------

    def write(self, entity: BaseEntity) -> None:
        """Atomically replace the file for *entity*."""
        path = self.entity_path(entity.id)
        data = encode(entity)
        atomic.write_bytes_atomic(path, data)
        self._remember(path, data, entity)

    def create(self, entity: BaseEntity) -> None:
        """Write *entity* only if its id was never used on this replica.

        Raises:
            IdCollisionError: If the file or a tombstone already exists.
        """
        if self.tombstone_path(entity.id).exists():
            raise IdCollisionError(entity.id)
        path = self.entity_path(entity.id)
        data = encode(entity)
        try:
            atomic.create_exclusive(path, data)
        except FileExistsError:
            raise IdCollisionError(entity.id) from None
        self._remember(path, data, entity)

    def read(self, entity_id: str) -> BaseEntity | None:
        """Return the entity, or ``None`` if it does not exist.

        Raises:
            DecodeError: If the file exists but is not a valid entity.
        """
        path = self.entity_path(entity_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        return decode(data, path=self.relpath(path))

    def get(self, entity_id: str) -> BaseEntity:
        """Like ``read()`` but raises ``NotFoundError`` when missing."""
        entity = self.read(entity_id)
        if entity is None:
            raise NotFoundError(entity_id)
        return entity

    def exists(self, entity_id: str) -> bool:
        return self.entity_path(entity_id).exists()

    def is_retired(self, entity_id: str) -> bool:
        return self.tombstone_path(entity_id).exists()

    def delete(self, entity_id: str) -> bool:
        """Remove an entity and retire its id.

        Returns:
            ``True`` if a file was removed.
        """
        path = self.entity_path(entity_id)
        try:
            path.unlink()
            removed = True
        except FileNotFoundError:
            removed = False
        tombstone = self.tombstone_path(entity_id)
        if not tombstone.exists():
            atomic.write_bytes_atomic(tombstone, b"")
        return removed

    def list(
        self,
        entity_type: str | None = None,
        predicate: Predicate | None = None,
    ) -> EntityListing:
        """Return a lazy listing, optionally filtered by type and predicate."""
        if entity_type is None:
            prefixes = sorted(ENTITY_TYPES)
        else:
            prefixes = [resolve_entity_type(entity_type)]
        return EntityListing(self, prefixes, predicate)

    # ------------------------------------------------------------------
    # Index-backed loading
    # ------------------------------------------------------------------

    def _remember(self, path: Path, data: bytes, entity: BaseEntity) -> None:
        if self._index is None:
            return
        self._index.record(
            self.relpath(path),
            path.stat(),
            blob_id(data),
            entity.model_dump(mode="json"),
        )

    def _load_listed(self, path: Path) -> BaseEntity | None:
        rel = self.relpath(path)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None

        if self._index is not None:
            entry = self._index.lookup(rel, stat)
            if entry is not None and entry.get("fields") is not None:
                fields = entry["fields"]
                cls = ENTITY_TYPES.get(fields.get("type"))
                if cls is not None:
                    try:
                        return cls.model_validate(fields)
                    except ValidationError:
                        # Written by another version; the file decides.
                        logger.debug("Stale index entry for %s", rel)

        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            entity = decode(data, path=rel)
        except DecodeError as exc:
            logger.warning("Skipping unreadable entity file: %s", exc)
            return None
        if self._index is not None:
            self._index.record(
                rel, stat, blob_id(data), entity.model_dump(mode="json")
            )
        return entity

    def flush_index(self) -> None:
        if self._index is not None:
            self._index.save()

    # ------------------------------------------------------------------
    # Raw file access (used by the sync protocol)
    # ------------------------------------------------------------------

    def scan_blobs(self) -> dict[str, str]:
        """Return ``{relative path: git blob id}`` for every data file."""
        result: dict[str, str] = {}
        if not self.data_dir.exists():
            return result
        for dirpath, dirnames, filenames in os.walk(self.data_dir):
            dirnames.sort()
            for name in sorted(filenames):
                if name.startswith(atomic.TEMP_PREFIX):
                    continue
                path = Path(dirpath) / name
                rel = self.relpath(path)
                result[rel] = self._blob_id_for(path, rel)
        if self._index is not None:
            self._index.prune(set(result))
            self._index.save()
        return result

    def _blob_id_for(self, path: Path, rel: str) -> str:
        stat = path.stat()
        if self._index is not None:
            entry = self._index.lookup(rel, stat)
            if entry is not None:
                return entry["blob_id"]
        data = path.read_bytes()
        oid = blob_id(data)
        if self._index is not None:
            self._index.record(rel, stat, oid, None)
        return oid

    def read_bytes(self, rel_path: str) -> bytes | None:
        try:
            return (self.data_dir / rel_path).read_bytes()
        except FileNotFoundError:
            return None

    def write_bytes(self, rel_path: str, data: bytes) -> None:
        atomic.write_bytes_atomic(self.data_dir / rel_path, data)

    def remove_path(self, rel_path: str) -> bool:
        try:
            (self.data_dir / rel_path).unlink()
        except FileNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reclaim_orphans(self, max_age: float) -> list[Path]:
        """Remove abandoned temp files older than *max_age* seconds."""
        return atomic.reclaim_orphans(self.data_dir, max_age)


# ---------------------------------------------------------------------------
# Path classification
# ---------------------------------------------------------------------------


def is_entity_path(rel_path: str) -> bool:
    """True for ``entities/<prefix>/<id>.md`` paths."""
    parts = rel_path.split("/")
    return (
        len(parts) == 3
        and parts[0] == ENTITIES_DIR
        and parts[2].endswith(ENTITY_SUFFIX)
    )


def entity_id_from_path(rel_path: str) -> str | None:
    """Return the entity id an entity or tombstone path refers to."""
    parts = rel_path.split("/")
    if len(parts) != 3:
        return None
    if parts[0] == ENTITIES_DIR and parts[2].endswith(ENTITY_SUFFIX):
        return parts[2][: -len(ENTITY_SUFFIX)]
    if parts[0] == TOMBSTONES_DIR:
        return parts[2]
    return None
