"""Durable holding area for changes that could not be pushed.

When the remote refuses a push for a reason retrying cannot fix (for
example an HTTP 403), every locally changed data file is copied to
``.tbd/workspaces/outbox/`` under its data-relative path.  The next sync
imports the outbox before fetching: missing files are restored, entity
files that diverged since are merged, and the outbox is cleared once a
push lands.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from tbd_core.attic import AtticArchive
from tbd_core.merge.engine import merge
from tbd_core.store import atomic
from tbd_core.store.codec import decode
from tbd_core.store.entity_store import (
    EntityStore,
    entity_id_from_path,
    is_entity_path,
)

logger = logging.getLogger(__name__)


class Outbox:
    """Local-only copy of unpushed data files.

    Args:
        outbox_dir: Directory holding the saved files.
    """

    def __init__(self, outbox_dir: Path) -> None:
        self.outbox_dir = outbox_dir

    def paths(self) -> list[str]:
        if not self.outbox_dir.is_dir():
            return []
        return sorted(
            p.relative_to(self.outbox_dir).as_posix()
            for p in self.outbox_dir.rglob("*")
            if p.is_file() and not p.name.startswith(atomic.TEMP_PREFIX)
        )

    def is_empty(self) -> bool:
        return not self.paths()

    def save(self, store: EntityStore, rel_paths: Iterable[str]) -> list[str]:
        """Copy the current bytes of *rel_paths* into the outbox.

        Paths that no longer exist in the data directory are skipped;
        deletions are carried by their tombstone files.

        Returns:
            The saved paths.
        """
        saved = []
        for rel in sorted(set(rel_paths)):
            data = store.read_bytes(rel)
            if data is None:
                continue
            atomic.write_bytes_atomic(self.outbox_dir / rel, data)
            saved.append(rel)
        if saved:
            logger.warning(
                "Saved %d unpushed file(s) to %s", len(saved), self.outbox_dir
            )
        return saved

    def import_into(
        self, store: EntityStore, attic: AtticArchive
    ) -> list[str]:
        """Bring outbox files back into the data directory.

        Entity files whose id has since been retired are discarded, so a
        delete made after the failed push stays deleted.

        Returns:
            Paths whose data-directory content changed.
        """
        changed = []
        for rel in self.paths():
            if is_entity_path(rel) and store.is_retired(
                entity_id_from_path(rel)
            ):
                self.discard(rel)
                continue
            saved = (self.outbox_dir / rel).read_bytes()
            current = store.read_bytes(rel)
            if current == saved:
                continue
            if current is None:
                store.write_bytes(rel, saved)
                changed.append(rel)
                continue
            if not is_entity_path(rel):
                # Attic entries and meta are immutable or derived; the
                # data directory copy is authoritative.
                continue
            local = decode(current, path=rel)
            held = decode(saved, path=f"outbox/{rel}")
            if (
                local.version >= held.version
                and local.updated_at >= held.updated_at
            ):
                # Edited locally after it was saved; nothing to restore.
                continue
            result = merge(local, held)
            attic.record_all(result.attic_entries)
            store.write(result.merged)
            changed.append(rel)
        if changed:
            logger.info("Imported %d file(s) from outbox", len(changed))
        return changed

    def discard(self, rel: str) -> None:
        path = self.outbox_dir / rel
        if path.exists():
            path.unlink()
            logger.info("Dropped %s from outbox, entity was deleted", rel)

    def clear(self) -> None:
        if self.outbox_dir.exists():
            shutil.rmtree(self.outbox_dir)
            logger.info("Cleared outbox %s", self.outbox_dir)
