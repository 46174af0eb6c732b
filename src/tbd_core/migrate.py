"""On-disk format versions and migrations.

Each format version is a short tag (``f01``, ``f02``...).  Data and
config declare the format they were written in; older data is migrated
forward step by step before any other component reads it.  Data
declaring a format this version does not know is refused with
``UpgradeRequiredError``: an older writer must never rewrite newer data,
because it would silently drop the fields it does not understand.

Format history:

- ``f01`` -- initial layout.  Dependencies used the key ``type`` for the
  relation; ``extensions`` and ``kind`` were optional.
- ``f02`` -- dependencies use ``relation``; every entity carries an
  ``extensions`` map; issues always carry ``kind``.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from tbd_core.errors import UpgradeRequiredError

logger = logging.getLogger(__name__)

INITIAL_FORMAT = "f01"
CURRENT_FORMAT = "f02"

FORMAT_HISTORY: dict[str, str] = {
    "f01": "Initial format",
    "f02": "Dependency 'relation' key; mandatory extensions map",
}

META_FILE = "meta.yml"

RawEntity = dict[str, Any]


# ---------------------------------------------------------------------------
# Version helpers
# ---------------------------------------------------------------------------


def is_known_format(fmt: str) -> bool:
    return fmt in FORMAT_HISTORY


def is_compatible_format(fmt: str | None) -> bool:
    """Return ``True`` if this version can read data in *fmt*.

    A missing format is treated as the initial format.
    """
    return fmt is None or is_known_format(fmt)


def check_format_compatible(fmt: str | None) -> None:
    """Raise ``UpgradeRequiredError`` for formats newer than supported."""
    if not is_compatible_format(fmt):
        raise UpgradeRequiredError(str(fmt), CURRENT_FORMAT)


def needs_migration(fmt: str | None) -> bool:
    check_format_compatible(fmt)
    return (fmt or INITIAL_FORMAT) != CURRENT_FORMAT


# ---------------------------------------------------------------------------
# Per-step migrations
# ---------------------------------------------------------------------------


def _migrate_f01_to_f02(raw: RawEntity) -> RawEntity:
    deps = raw.get("dependencies")
    if isinstance(deps, list):
        upgraded = []
        for dep in deps:
            if isinstance(dep, dict) and "relation" not in dep:
                dep = dict(dep)
                if "type" in dep:
                    dep["relation"] = dep.pop("type")
            upgraded.append(dep)
        raw["dependencies"] = upgraded
    if raw.get("extensions") is None:
        raw["extensions"] = {}
    if raw.get("type") == "is" and raw.get("kind") is None:
        raw["kind"] = "task"
    return raw


# from-version -> (to-version, migration)
_MIGRATIONS: dict[str, tuple[str, Callable[[RawEntity], RawEntity]]] = {
    "f01": ("f02", _migrate_f01_to_f02),
}


def migrate(raw: RawEntity, declared_format: str | None) -> RawEntity:
    """Upgrade a raw entity mapping from *declared_format* to current.

    The input is not mutated.

    Raises:
        UpgradeRequiredError: If *declared_format* is newer than
            ``CURRENT_FORMAT`` or unknown.
    """
    check_format_compatible(declared_format)
    fmt = declared_format or INITIAL_FORMAT
    if fmt == CURRENT_FORMAT:
        return raw

    result = copy.deepcopy(raw)
    while fmt != CURRENT_FORMAT:
        target, step = _MIGRATIONS[fmt]
        result = step(result)
        fmt = target
    return result


# ---------------------------------------------------------------------------
# meta.yml
# ---------------------------------------------------------------------------


def read_data_format(data_dir: Path) -> str | None:
    """Return the format declared in ``<data_dir>/meta.yml`` (or None)."""
    path = data_dir / META_FILE
    if not path.exists():
        return None
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        return None
    fmt = data.get("tbd_format")
    return str(fmt) if fmt is not None else None


def parse_meta_format(data: bytes) -> str | None:
    """Return the format declared by raw ``meta.yml`` bytes."""
    loaded = yaml.safe_load(data.decode("utf-8")) or {}
    if not isinstance(loaded, dict):
        return None
    fmt = loaded.get("tbd_format")
    return str(fmt) if fmt is not None else None


def meta_bytes(fmt: str = CURRENT_FORMAT) -> bytes:
    return yaml.safe_dump({"tbd_format": fmt}, sort_keys=True).encode(
        "utf-8"
    )


def migrate_data_dir(data_dir: Path) -> int:
    """Upgrade every entity file under *data_dir* to ``CURRENT_FORMAT``.

    Files are rewritten atomically one at a time; ``meta.yml`` is updated
    last so an interrupted run is simply repeated.

    Returns:
        Number of entity files rewritten.
    """
    # Imported here to avoid circular imports (codec uses migrate()).
    from tbd_core.store.atomic import write_bytes_atomic
    from tbd_core.store.codec import decode, encode

    fmt = read_data_format(data_dir)
    if not needs_migration(fmt):
        return 0

    logger.info(
        "Migrating %s from %s to %s",
        data_dir,
        fmt or INITIAL_FORMAT,
        CURRENT_FORMAT,
    )
    rewritten = 0
    entities_dir = data_dir / "entities"
    if entities_dir.exists():
        for path in sorted(entities_dir.glob("*/*.md")):
            original = path.read_bytes()
            entity = decode(original, path=str(path), format_version=fmt)
            upgraded = encode(entity)
            if upgraded != original:
                write_bytes_atomic(path, upgraded)
                rewritten += 1

    write_bytes_atomic(data_dir / META_FILE, meta_bytes())
    logger.info("Migration complete: %d file(s) rewritten", rewritten)
    return rewritten
