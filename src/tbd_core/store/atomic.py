"""Crash-safe file writes.

Every write goes to a ``.tmp-*`` file in the destination directory, is
fsynced, and is then renamed over the destination, so a reader sees the
old bytes or the new bytes and never a partial file.  Temp files left
behind by a crashed process are reclaimed by ``reclaim_orphans()`` once
they are older than a safety threshold.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".tmp-"


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextlib.contextmanager
def _temp_file(directory: Path, stem: str) -> Iterator[tuple[BinaryIO, str]]:
    """Yield an open temp file in *directory*; it is removed on exit
    unless the caller has already renamed it away."""
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(directory), prefix=f"{TEMP_PREFIX}{stem}-"
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh, tmp_path
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass


@contextlib.contextmanager
def atomic_write(path: Path) -> Iterator[BinaryIO]:
    """Open *path* for an all-or-nothing binary write.

    The new content becomes visible only when the ``with`` block exits
    normally; on any exception the destination is left untouched.

    Example:
        with atomic_write(target) as fh:
            fh.write(data)
    """
    with _temp_file(path.parent, path.name) as (fh, tmp_path):
        yield fh
        fh.flush()
        os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    _fsync_dir(path.parent)


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Replace *path* with *data* atomically."""
    with atomic_write(path) as fh:
        fh.write(data)


def create_exclusive(path: Path, data: bytes) -> None:
    """Create *path* with *data*, failing if it already exists.

    The complete content is written to a temp file first and then
    hard-linked into place, so the file never appears half written.

    Raises:
        FileExistsError: If *path* already exists.
    """
    with _temp_file(path.parent, path.name) as (fh, tmp_path):
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
        os.link(tmp_path, path)
    _fsync_dir(path.parent)


def reclaim_orphans(
    root: Path, max_age: float, now: float | None = None
) -> list[Path]:
    """Delete ``.tmp-*`` files under *root* older than *max_age* seconds.

    Younger temp files may belong to a writer that is still running and
    are left alone.

    Returns:
        Paths that were removed.
    """
    if max_age <= 0:
        raise ValueError("max_age must be positive")
    if not root.exists():
        return []
    current = time.time() if now is None else now
    removed: list[Path] = []
    for path in root.rglob(f"{TEMP_PREFIX}*"):
        try:
            age = current - path.stat().st_mtime
        except FileNotFoundError:
            continue
        if age < max_age or not path.is_file():
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        logger.info("Reclaimed orphaned temp file %s", path)
        removed.append(path)
    return removed
