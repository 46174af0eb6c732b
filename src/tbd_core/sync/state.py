"""Sync baseline persistence.

The baseline is the last commit this replica fully reconciled with the
remote sync branch.  It lives in ``.tbd/cache/`` (never synced) as one
JSON file per remote/branch pair.

Key design choices:

* **Atomic writes** -- ``save()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Advisory only** -- a missing or unreadable file yields an empty
  state; the protocol then falls back to ``git merge-base`` or a full
  reconcile, which is slower but still correct.
* **Dict-based state** -- a plain ``dict`` the protocol mutates during a
  run and persists once at the end.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

STATE_VERSION = 1

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class SyncStateStore:
    """Load and save the sync baseline for a remote/branch pair.

    Args:
        state_dir: Directory where state files are stored
            (typically ``.tbd/cache/``).
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, remote: str, branch: str) -> dict:
        """Load sync state from disk.

        Returns:
            The state dict.  If the file does not exist (or cannot be
            parsed) an empty state with ``baseline=None`` is returned.
        """
        path = self._state_path(remote, branch)
        empty = {
            "version": STATE_VERSION,
            "remote": remote,
            "branch": branch,
            "baseline": None,
            "last_sync": None,
        }
        if not path.exists():
            return empty
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable sync state %s: %s", path, exc)
            return empty
        if not isinstance(data, dict):
            return empty
        return {**empty, **data}

    def save(self, remote: str, branch: str, state: dict) -> None:
        """Persist sync state to disk atomically.

        Writes to a temporary file in the same directory then atomically
        replaces the target.  Creates ``state_dir`` if it does not exist.

        The ``last_sync`` field is set to the current UTC ISO 8601 timestamp
        before writing.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        state["last_sync"] = datetime.now(timezone.utc).isoformat()

        target = self._state_path(remote, branch)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), prefix=".tmp-state-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, target)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Baseline helpers
    # ------------------------------------------------------------------

    def baseline(self, remote: str, branch: str) -> str | None:
        """Return the recorded baseline commit, if any."""
        return self.load(remote, branch).get("baseline")

    def set_baseline(self, remote: str, branch: str, commit: str | None) -> None:
        state = self.load(remote, branch)
        state["baseline"] = commit
        self.save(remote, branch, state)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _state_path(self, remote: str, branch: str) -> Path:
        """Return the path to the state file for *remote*/*branch*."""
        name = _UNSAFE_CHARS.sub("_", f"{remote}__{branch}")
        return self._state_dir / f"sync_{name}.json"
