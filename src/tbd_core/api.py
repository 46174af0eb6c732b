"""Public facade over the store, attic and sync protocol.

``TbdStore`` is the only surface a CLI or agent layer needs::

    store = TbdStore.init(Path("/path/to/repo"), id_prefix="proj")
    issue = store.create("issue", title="Fix login", priority=1)
    store.update(issue.id, labels=["auth"])
    result = store.sync()
    print(format_sync_result(result))

All paths derive from the explicit repository root; nothing reads the
current working directory.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tbd_core.attic import AtticArchive, patch_changes
from tbd_core.config import load_config
from tbd_core.config_loader import TBD_DIR, ensure_config
from tbd_core.config_schema import UnifiedConfig
from tbd_core.core.async_utils import run_sync
from tbd_core.errors import (
    IdCollisionError,
    ImmutableFieldError,
    NotInitializedError,
)
from tbd_core.migrate import META_FILE, meta_bytes, migrate_data_dir
from tbd_core.model.attic import AtticEntry
from tbd_core.model.entities import (
    BaseEntity,
    IssueStatus,
    entity_class_for,
    format_timestamp,
    repair_close_state,
    resolve_entity_type,
)
from tbd_core.model.ids import generate_id, normalize_id
from tbd_core.store import atomic
from tbd_core.store.entity_store import EntityListing, EntityStore, Predicate
from tbd_core.store.index import LocalIndex
from tbd_core.sync.git import GitRunner
from tbd_core.sync.models import SyncDirection, SyncResult, SyncStatus
from tbd_core.sync.outbox import Outbox
from tbd_core.sync.protocol import SyncProtocol
from tbd_core.sync.state import SyncStateStore

logger = logging.getLogger(__name__)

DATA_DIR = "data-sync"
CACHE_DIR = "cache"
OUTBOX_DIR = "workspaces/outbox"
MAX_ID_ATTEMPTS = 8

_GITIGNORE = """\
# Local-only tbd files (never committed to your branches)
cache/
data-sync/
workspaces/
"""

_PROTECTED_FIELDS = ("id", "type")
_MANAGED_FIELDS = ("version", "created_at", "updated_at")

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TbdStore:
    """Entity store rooted at a repository.

    Args:
        root: Repository root containing ``.tbd/``.
        config: Pre-loaded configuration; loaded from disk when omitted.
        git: Git runner; built from config when omitted.
        clock: Current-time source for timestamps.
        environ: Environment mapping for config and git.

    Raises:
        NotInitializedError: If ``<root>/.tbd`` does not exist.
        UpgradeRequiredError: If the data is newer than supported.
    """

    def __init__(
        self,
        root: Path,
        config: UnifiedConfig | None = None,
        git: GitRunner | None = None,
        clock: Clock | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.tbd_dir = self.root / TBD_DIR
        if not self.tbd_dir.is_dir():
            raise NotInitializedError(f"No {TBD_DIR}/ directory in {self.root}")

        self.config = config or load_config(self.root, environ)
        self._clock = clock or _utc_now
        self._environ = environ
        self._git = git

        self.data_dir = self.tbd_dir / DATA_DIR
        self.data_dir.mkdir(parents=True, exist_ok=True)
        migrate_data_dir(self.data_dir)
        if not (self.data_dir / META_FILE).exists():
            atomic.write_bytes_atomic(self.data_dir / META_FILE, meta_bytes())

        index = (
            LocalIndex(self.tbd_dir / CACHE_DIR / "index.json")
            if self.config.store.use_index
            else None
        )
        self.entities = EntityStore(self.data_dir, index)
        reclaimed = self.entities.reclaim_orphans(
            self.config.store.orphan_temp_max_age
        )
        if reclaimed:
            logger.info("Reclaimed %d orphaned temp file(s)", len(reclaimed))
        self.attic = AtticArchive(self.data_dir, clock=self._clock)

    @classmethod
    def init(
        cls,
        root: Path,
        id_prefix: str = "tbd",
        **kwargs: Any,
    ) -> "TbdStore":
        """Create ``.tbd/`` under *root* (idempotent) and open the store."""
        root = Path(root).resolve()
        ensure_config(root, id_prefix=id_prefix)
        gitignore = root / TBD_DIR / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE, encoding="utf-8")
        logger.info("Initialized tbd in %s", root)
        return cls(root, **kwargs)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> str:
        return format_timestamp(self._clock())

    @property
    def git(self) -> GitRunner:
        if self._git is None:
            self._git = GitRunner(
                self.root,
                identity=self.config.identity,
                timeout=self.config.sync.git_timeout,
                environ=self._environ,
            )
        return self._git

    def _protocol(self) -> SyncProtocol:
        return SyncProtocol(
            store=self.entities,
            attic=self.attic,
            git=self.git,
            config=self.config.sync,
            state=SyncStateStore(self.tbd_dir / CACHE_DIR),
            outbox=Outbox(self.tbd_dir / OUTBOX_DIR),
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, entity_type: str, **fields: Any) -> BaseEntity:
        """Create a new entity with a fresh id.

        Raises:
            IdCollisionError: If every generated id collided.
            pydantic.ValidationError: If *fields* are invalid.
        """
        prefix = resolve_entity_type(entity_type)
        cls = entity_class_for(prefix)
        now = self._now()
        data = {k: v for k, v in fields.items() if k not in _MANAGED_FIELDS}
        data.update(
            {"type": prefix, "version": 1, "created_at": now, "updated_at": now}
        )
        repair_close_state(data, now)

        for _ in range(MAX_ID_ATTEMPTS):
            data["id"] = generate_id(prefix, self.config.store.id_length)
            entity = cls.model_validate(data)
            try:
                self.entities.create(entity)
            except IdCollisionError as exc:
                logger.warning("Id collision on %s, regenerating", exc.entity_id)
                continue
            logger.debug("Created %s", entity.id)
            return entity
        raise IdCollisionError(data["id"])

    def read(self, entity_id: str) -> BaseEntity | None:
        return self.entities.read(normalize_id(entity_id))

    def get(self, entity_id: str) -> BaseEntity:
        return self.entities.get(normalize_id(entity_id))

    def update(self, entity_id: str, **changes: Any) -> BaseEntity:
        """Apply *changes*, bump ``version`` and stamp ``updated_at``.

        Raises:
            NotFoundError: If the entity does not exist.
            ImmutableFieldError: If *changes* alter ``id`` or ``type``.
        """
        current = self.get(entity_id)
        for name in _PROTECTED_FIELDS:
            if name in changes and changes[name] != getattr(current, name):
                raise ImmutableFieldError(
                    current.id, name, getattr(current, name), changes[name]
                )
        data = current.model_dump(mode="json")
        data.update(
            {k: v for k, v in changes.items() if k not in _MANAGED_FIELDS}
        )
        now = self._now()
        # Never move updated_at backwards, even under clock skew.
        data["updated_at"] = max(now, current.updated_at)
        data["version"] = current.version + 1
        repair_close_state(data, data["updated_at"])

        updated = type(current).model_validate(data)
        self.entities.write(updated)
        logger.debug("Updated %s to version %d", updated.id, updated.version)
        return updated

    def close(self, entity_id: str, reason: str | None = None) -> BaseEntity:
        return self.update(
            entity_id, status=IssueStatus.CLOSED.value, close_reason=reason
        )

    def reopen(self, entity_id: str) -> BaseEntity:
        return self.update(
            entity_id, status=IssueStatus.OPEN.value, close_reason=None
        )

    def delete(self, entity_id: str) -> bool:
        """Delete an entity; its id is retired and never reused."""
        return self.entities.delete(normalize_id(entity_id))

    def list(
        self,
        entity_type: str | None = None,
        predicate: Predicate | None = None,
        **field_filters: Any,
    ) -> EntityListing:
        """List entities, filtered by type, predicate and field equality.

        Example:
            store.list("issue", status="open", priority=1)
        """

        def _matches(entity: BaseEntity) -> bool:
            for name, expected in field_filters.items():
                if getattr(entity, name, None) != expected:
                    return False
            return predicate is None or predicate(entity)

        use_filter = predicate is not None or bool(field_filters)
        return self.entities.list(entity_type, _matches if use_filter else None)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(self, direction: SyncDirection = SyncDirection.BOTH) -> SyncResult:
        """Synchronize with the remote sync branch."""
        result = self._protocol().run(SyncDirection(direction))
        logger.info("Sync finished: %s", result.outcome.value)
        return result

    async def sync_async(
        self, direction: SyncDirection = SyncDirection.BOTH
    ) -> SyncResult:
        """Run ``sync()`` in a worker thread."""
        return await run_sync(self.sync, direction)

    def sync_status(self) -> SyncStatus:
        return self._protocol().status()

    # ------------------------------------------------------------------
    # Attic
    # ------------------------------------------------------------------

    def attic_list(self, entity_id: str | None = None) -> list[AtticEntry]:
        return self.attic.list(normalize_id(entity_id) if entity_id else None)

    def attic_show(self, entry_id: str) -> AtticEntry:
        return self.attic.show(entry_id)

    def restore_attic_entry(self, entry_id: str) -> BaseEntity:
        """Re-apply an archived value through a normal update."""
        patch = self.attic.restore(entry_id)
        entity = self.get(patch.entity_id)
        changes = patch_changes(entity, patch)
        logger.info("Restoring %s.%s from attic", patch.entity_id, patch.field)
        return self.update(entity.id, **changes)
