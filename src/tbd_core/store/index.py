"""Rebuildable local index of decoded entity files.

The index lives in ``.tbd/cache/index.json`` and is never synced.  Each
entry is keyed by the file's path relative to the data directory and is
only trusted while the file's ``(mtime_ns, size)`` still match, so a
stale, missing or corrupted index costs a re-parse and nothing else.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from tbd_core.store.atomic import write_bytes_atomic

logger = logging.getLogger(__name__)

INDEX_VERSION = 1


class LocalIndex:
    """Cache of ``relative path -> (stat key, blob id, decoded fields)``.

    Args:
        path: Location of the JSON index file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._entries: dict[str, dict[str, Any]] | None = None
        self._dirty = False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._entries is not None:
            return self._entries
        entries: dict[str, dict[str, Any]] = {}
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
            if (
                isinstance(data, dict)
                and data.get("version") == INDEX_VERSION
                and isinstance(data.get("entries"), dict)
            ):
                entries = data["entries"]
            else:
                logger.debug("Ignoring index with unexpected layout")
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            logger.warning("Rebuilding unreadable index %s: %s", self._path, exc)
        self._entries = entries
        return entries

    def save(self) -> None:
        """Persist the index if anything changed since the last save."""
        if not self._dirty or self._entries is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": INDEX_VERSION, "entries": self._entries}
        write_bytes_atomic(
            self._path, json.dumps(payload, sort_keys=True).encode("utf-8")
        )
        self._dirty = False

    def clear(self) -> None:
        self._entries = {}
        self._dirty = True

    # ------------------------------------------------------------------
    # Entry helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _stat_key(stat: os.stat_result) -> list[int]:
        return [stat.st_mtime_ns, stat.st_size]

    def lookup(self, rel_path: str, stat: os.stat_result) -> dict | None:
        """Return the cached entry for *rel_path* if it is still fresh."""
        entry = self._load().get(rel_path)
        if entry is None or entry.get("stat") != self._stat_key(stat):
            return None
        return entry

    def record(
        self,
        rel_path: str,
        stat: os.stat_result,
        blob_id: str,
        fields: dict[str, Any] | None,
    ) -> None:
        """Upsert the entry for *rel_path*."""
        self._load()[rel_path] = {
            "stat": self._stat_key(stat),
            "blob_id": blob_id,
            "fields": fields,
        }
        self._dirty = True

    def prune(self, live_paths: set[str]) -> None:
        """Drop entries for files that no longer exist."""
        entries = self._load()
        stale = [p for p in entries if p not in live_paths]
        for rel_path in stale:
            del entries[rel_path]
        if stale:
            self._dirty = True
