"""Git sync protocol for the dedicated sync branch.

``SyncProtocol.run()`` drives one sync as an explicit state machine::

    Idle -> Fetching -> Diffing -> Merging -> Committing -> Pushing
                ^                                            |
                +------------------ RetryPull <--------------+
    Pushing -> Done | Failed

1. **Fetching** -- fetch the sync branch into its remote-tracking ref.
   All remote reads after this point come from that ref.
2. **Diffing** -- compare the data directory and the remote tree against
   the base commit (retry base, stored baseline, or merge-base).
3. **Merging** -- paths changed only remotely are applied locally; paths
   changed on both sides go through the merge engine, with losers
   archived in the attic before the merged entity is written.
4. **Committing** -- build a tree from the data directory using a
   private index file inside the git dir and commit it on top of the
   remote head.  The caller's index and working tree are never used.
5. **Pushing** -- push without force.  A non-fast-forward rejection
   re-enters Fetching with the old remote head as base, at most
   ``max_push_attempts`` times; then the run fails with
   ``MANUAL_SYNC_REQUIRED`` and the blocking remote commit.

Transient failures are retried with exponential backoff and then
reported; permanent failures copy unpushed files to the outbox.  A run
reports ``SUCCESS`` only when the remote holds this replica's state.

The protocol is safe to interrupt anywhere: the private index is
rebuilt from scratch on every commit, and the local branch ref and the
baseline only move after a push has landed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TypeVar

from tbd_core.attic import AtticArchive
from tbd_core.config_schema import SyncConfig
from tbd_core.errors import (
    GitCommandError,
    GitErrorKind,
    IntegrityError,
    SyncError,
    TbdError,
    UpgradeRequiredError,
    corrective_action,
)
from tbd_core.merge.engine import merge
from tbd_core.migrate import (
    CURRENT_FORMAT,
    META_FILE,
    check_format_compatible,
    parse_meta_format,
)
from tbd_core.model.entities import format_timestamp
from tbd_core.store.codec import decode, encode
from tbd_core.store.entity_store import (
    EntityStore,
    entity_id_from_path,
    is_entity_path,
)
from tbd_core.sync.git import ZERO_OID, GitRunner
from tbd_core.sync.models import (
    SyncConflict,
    SyncDirection,
    SyncOutcome,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from tbd_core.sync.outbox import Outbox
from tbd_core.sync.state import SyncStateStore

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "tbd-sync.index"

T = TypeVar("T")


class _Finished(Exception):
    """Internal: carries the terminal result out of the state machine."""

    def __init__(self, result: SyncResult) -> None:
        super().__init__(result.outcome.value)
        self.result = result


class SyncProtocol:
    """Synchronize a data directory with a remote sync branch.

    Args:
        store: Entity store over the data directory.
        attic: Attic archive over the same data directory.
        git: Git runner for the enclosing repository.
        config: Branch, remote and retry settings.
        state: Baseline store (local-only).
        outbox: Holding area for unpushed changes.
        clock: Current time, for result timestamps.
        sleep: Called with the backoff delay between transient retries.
    """

    def __init__(
        self,
        store: EntityStore,
        attic: AtticArchive,
        git: GitRunner,
        config: SyncConfig,
        state: SyncStateStore,
        outbox: Outbox,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.attic = attic
        self.git = git
        self.config = config
        self.state = state
        self.outbox = outbox
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

        self.local_ref = f"refs/heads/{config.branch}"
        self.tracking_ref = f"refs/remotes/{config.remote}/{config.branch}"

        self._reset_run(SyncDirection.BOTH)

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    def _reset_run(self, direction: SyncDirection) -> None:
        self._direction = direction
        self._phases: list[SyncPhase] = [SyncPhase.IDLE]
        self._pushed: set[str] = set()
        self._pulled: set[str] = set()
        self._conflicts: dict[str, SyncConflict] = {}
        self._attempts = 0
        self._pending_paths: set[str] = set()
        self._remote_format: str | None = CURRENT_FORMAT
        self._started_at = format_timestamp(self._clock())

    def _enter(self, phase: SyncPhase) -> None:
        logger.debug("sync phase: %s", phase.value)
        self._phases.append(phase)

    def _result(self, outcome: SyncOutcome, **fields) -> SyncResult:
        ok = outcome == SyncOutcome.SUCCESS
        self._enter(SyncPhase.DONE if ok else SyncPhase.FAILED)
        return SyncResult(
            outcome=outcome,
            direction=self._direction,
            pushed=sorted(self._pushed) if ok else [],
            pulled=sorted(self._pulled),
            conflicts=[self._conflicts[k] for k in sorted(self._conflicts)],
            attempts=self._attempts,
            phases=list(self._phases),
            started_at=self._started_at,
            completed_at=format_timestamp(self._clock()),
            **fields,
        )

    def _failure(
        self, outcome: SyncOutcome, error: BaseException, **fields
    ) -> SyncResult:
        return self._result(
            outcome,
            error=str(error),
            corrective_action=corrective_action(error),
            **fields,
        )

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(self, direction: SyncDirection = SyncDirection.BOTH) -> SyncResult:
        """Execute one sync.

        Returns:
            A ``SyncResult``.  Failures are returned, not raised, except
            programming errors.
        """
        self._reset_run(direction)
        try:
            imported = self.outbox.import_into(self.store, self.attic)
            if imported:
                logger.info("Restored %d outbox file(s)", len(imported))
            return self._run_state_machine()
        except _Finished as finished:
            return finished.result
        except GitCommandError as exc:
            return self._handle_git_failure(exc)
        except (IntegrityError, UpgradeRequiredError) as exc:
            logger.error("Sync aborted: %s", exc)
            return self._failure(SyncOutcome.INTEGRITY_FAILURE, exc)
        except SyncError as exc:
            logger.error("Sync failed: %s", exc)
            return self._failure(SyncOutcome.TRANSIENT_FAILURE, exc)

    def _run_state_machine(self) -> SyncResult:
        retry_base: str | None = None
        retrying = False

        while True:
            self._enter(SyncPhase.FETCHING)
            remote_head = self._with_retries(
                lambda: self.git.fetch(self.config.remote, self.config.branch)
            )
            self._check_remote_format(remote_head)

            self._enter(SyncPhase.DIFFING)
            base = retry_base if retrying else self._resolve_base(remote_head)
            base_tree = self.git.ls_tree(base) if base else {}
            remote_tree = self.git.ls_tree(remote_head) if remote_head else {}
            local_tree = self.store.scan_blobs()
            local_changed = _changed_paths(local_tree, base_tree)
            remote_changed = _changed_paths(remote_tree, base_tree)
            logger.info(
                "Diff against %s: %d local, %d remote change(s)",
                (base or "nothing")[:12],
                len(local_changed),
                len(remote_changed),
            )

            if self._direction == SyncDirection.PUSH and remote_changed:
                raise _Finished(
                    self._result(
                        SyncOutcome.MANUAL_SYNC_REQUIRED,
                        blocking_commit=remote_head,
                        error=(
                            "Remote has changes not yet pulled; "
                            "run a pull or full sync first"
                        ),
                    )
                )

            self._enter(SyncPhase.MERGING)
            self._merge_changes(
                base_tree,
                local_tree,
                remote_tree,
                local_changed,
                remote_changed,
            )

            if self._direction == SyncDirection.PULL:
                if remote_head:
                    self._record_baseline(remote_head)
                return self._result(SyncOutcome.SUCCESS, commit=remote_head)

            self._enter(SyncPhase.COMMITTING)
            final_tree = self.store.scan_blobs()
            if final_tree == remote_tree and remote_head:
                logger.info("Sync branch already matches local data")
                self._record_success(remote_head, remote_head)
                return self._result(SyncOutcome.SUCCESS, commit=remote_head)
            if not final_tree and not remote_head:
                return self._result(SyncOutcome.SUCCESS, commit=remote_head)

            commit = self._commit(final_tree, remote_tree, remote_head)
            outgoing = _changed_paths(final_tree, remote_tree)

            self._enter(SyncPhase.PUSHING)
            self._attempts += 1
            try:
                self._with_retries(
                    lambda: self.git.push(
                        self.config.remote, commit, self.config.branch
                    )
                )
            except GitCommandError as exc:
                if exc.kind != GitErrorKind.NON_FAST_FORWARD:
                    self._pending_paths = local_changed | outgoing
                    raise
                if self._attempts >= self.config.max_push_attempts:
                    blocking = self._peek_remote_head()
                    logger.error(
                        "Push rejected %d time(s); remote head %s",
                        self._attempts,
                        blocking,
                    )
                    return self._failure(
                        SyncOutcome.MANUAL_SYNC_REQUIRED,
                        exc,
                        blocking_commit=blocking,
                    )
                logger.info(
                    "Push rejected (attempt %d/%d), re-pulling",
                    self._attempts,
                    self.config.max_push_attempts,
                )
                self._enter(SyncPhase.RETRY_PULL)
                retry_base = remote_head
                retrying = True
                continue

            self._pushed.update(_entity_ids(outgoing))
            self._record_success(commit, remote_head)
            self.outbox.clear()
            logger.info(
                "Pushed %s (%d entity change(s))", commit[:12], len(self._pushed)
            )
            return self._result(SyncOutcome.SUCCESS, commit=commit)

    # ------------------------------------------------------------------
    # Fetch / base resolution
    # ------------------------------------------------------------------

    def _with_retries(self, operation: Callable[[], T]) -> T:
        """Run *operation*, retrying transient git failures with backoff."""
        delay = self.config.backoff_seconds
        for attempt in range(self.config.transient_retries + 1):
            try:
                return operation()
            except GitCommandError as exc:
                if (
                    exc.kind != GitErrorKind.TRANSIENT
                    or attempt >= self.config.transient_retries
                ):
                    raise
                logger.warning(
                    "Transient git failure (%s), retrying in %.1fs", exc, delay
                )
                self._sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")  # pragma: no cover

    def _check_remote_format(self, remote_head: str | None) -> None:
        if not remote_head:
            self._remote_format = CURRENT_FORMAT
            return
        meta = self.git.show_file(remote_head, META_FILE)
        fmt = parse_meta_format(meta) if meta is not None else None
        check_format_compatible(fmt)
        self._remote_format = fmt

    def _resolve_base(self, remote_head: str | None) -> str | None:
        baseline = self.state.baseline(self.config.remote, self.config.branch)
        if baseline and self.git.object_exists(baseline):
            return baseline
        if remote_head:
            local_head = self.git.rev_parse(self.local_ref)
            if local_head:
                return self.git.merge_base(local_head, remote_head)
        return None

    def _peek_remote_head(self) -> str | None:
        try:
            return self.git.fetch(self.config.remote, self.config.branch)
        except GitCommandError as exc:
            logger.warning("Could not determine blocking commit: %s", exc)
            return self.git.rev_parse(self.tracking_ref)

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def _merge_changes(
        self,
        base_tree: dict[str, str],
        local_tree: dict[str, str],
        remote_tree: dict[str, str],
        local_changed: set[str],
        remote_changed: set[str],
    ) -> None:
        for rel in sorted(remote_changed):
            remote_oid = remote_tree.get(rel)
            if rel in local_changed:
                if local_tree.get(rel) == remote_oid:
                    continue
                self._reconcile_path(rel, base_tree.get(rel), remote_oid)
            else:
                self._apply_remote(rel, remote_oid)

    def _apply_remote(self, rel: str, remote_oid: str | None) -> None:
        """Bring a remote-only change into the data directory."""
        if remote_oid is None:
            if self.store.remove_path(rel):
                self._mark_pulled(rel)
            return
        if rel == META_FILE and self._remote_format != CURRENT_FORMAT:
            return
        data = self.git.cat_blob(remote_oid)
        if is_entity_path(rel) and self._remote_format != CURRENT_FORMAT:
            entity = decode(data, path=rel, format_version=self._remote_format)
            data = encode(entity)
        self.store.write_bytes(rel, data)
        self._mark_pulled(rel)

    def _reconcile_path(
        self, rel: str, base_oid: str | None, remote_oid: str | None
    ) -> None:
        """Resolve a path both sides changed differently."""
        local_bytes = self.store.read_bytes(rel)

        if not is_entity_path(rel):
            # Attic entries with the same id describe the same loss; the
            # published copy wins.  meta.yml stays local (already checked
            # compatible).
            if rel.startswith("attic/") and remote_oid is not None:
                self.store.write_bytes(rel, self.git.cat_blob(remote_oid))
            return

        if remote_oid is None:
            # Deleted remotely, modified locally: keep the modification.
            logger.info("Keeping locally modified %s deleted on remote", rel)
            return
        remote_bytes = self.git.cat_blob(remote_oid)
        if local_bytes is None:
            logger.info("Restoring remotely modified %s deleted locally", rel)
            self.store.write_bytes(rel, remote_bytes)
            self._mark_pulled(rel)
            return

        local = decode(local_bytes, path=rel)
        remote = decode(
            remote_bytes, path=rel, format_version=self._remote_format
        )
        base = None
        if base_oid is not None:
            try:
                base = decode(
                    self.git.cat_blob(base_oid),
                    path=rel,
                    format_version=self._remote_format,
                )
            except TbdError as exc:
                logger.warning("Ignoring unreadable base for %s: %s", rel, exc)

        result = merge(local, remote, base)
        recorded = self.attic.record_all(result.attic_entries)
        self.store.write(result.merged)
        self._mark_pulled(rel)
        self._conflicts[local.id] = SyncConflict(
            entity_id=local.id,
            fields=result.conflicted_fields,
            attic_entries=[entry.entry_id for entry in recorded],
        )
        logger.info(
            "Merged %s (%d archived value(s))", local.id, len(recorded)
        )

    def _mark_pulled(self, rel: str) -> None:
        entity_id = entity_id_from_path(rel)
        if entity_id:
            self._pulled.add(entity_id)

    # ------------------------------------------------------------------
    # Committing
    # ------------------------------------------------------------------

    def _commit(
        self,
        tree_files: dict[str, str],
        remote_tree: dict[str, str],
        parent: str | None,
    ) -> str:
        """Write *tree_files* as a commit on top of *parent*.

        Uses a private index file so the caller's staging area is never
        read or written.
        """
        known = set(remote_tree.values())
        to_hash = sorted(
            rel for rel, oid in tree_files.items() if oid not in known
        )
        oids = dict(tree_files)
        if to_hash:
            written = self.git.hash_files(
                [self.store.data_dir / rel for rel in to_hash]
            )
            if len(written) != len(to_hash):
                raise SyncError("git hash-object returned an unexpected count")
            oids.update(zip(to_hash, written))

        index_path = self.git.git_dir() / INDEX_FILE_NAME
        index_path.unlink(missing_ok=True)
        env = {"GIT_INDEX_FILE": str(index_path)}
        try:
            self.git.run("read-tree", "--empty", env=env)
            entries = "".join(
                f"100644 blob {oids[rel]}\t{rel}\0" for rel in sorted(oids)
            )
            self.git.run(
                "update-index",
                "-z",
                "--index-info",
                input=entries.encode("utf-8"),
                env=env,
            )
            tree = self.git.text("write-tree", env=env)
        finally:
            index_path.unlink(missing_ok=True)

        changes = len(_changed_paths(tree_files, remote_tree))
        commit = self.git.commit_tree(
            tree, f"tbd sync: {changes} file change(s)", parent=parent
        )
        logger.debug("Prepared commit %s on %s", commit[:12], parent)
        return commit

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _record_baseline(self, commit: str) -> None:
        self.state.set_baseline(self.config.remote, self.config.branch, commit)

    def _record_success(self, commit: str, remote_head: str | None) -> None:
        """Advance the tracking ref, local branch and baseline to *commit*."""
        self.git.update_ref(self.tracking_ref, commit)
        current = self.git.rev_parse(self.local_ref)
        try:
            self.git.update_ref(self.local_ref, commit, current or ZERO_OID)
        except GitCommandError as exc:
            # The remote is authoritative; a racing local update only
            # costs a merge-base lookup next time.
            logger.warning("Could not advance %s: %s", self.local_ref, exc)
        self._record_baseline(commit)

    def _handle_git_failure(self, exc: GitCommandError) -> SyncResult:
        pending = self._pending_paths
        self._pending_paths = set()
        if exc.kind == GitErrorKind.TRANSIENT:
            logger.warning("Sync failed with a transient error: %s", exc)
            return self._failure(SyncOutcome.TRANSIENT_FAILURE, exc)

        # Anything else cannot be fixed by retrying: keep local work safe.
        if not pending:
            pending = self._unsynced_paths()
        saved = self.outbox.save(self.store, pending)
        logger.error("Sync failed permanently: %s", exc)
        return self._failure(
            SyncOutcome.PERMANENT_FAILURE, exc, saved_to_outbox=saved
        )

    def _unsynced_paths(self) -> set[str]:
        baseline = self.state.baseline(self.config.remote, self.config.branch)
        base_tree: dict[str, str] = {}
        if baseline and self.git.object_exists(baseline):
            base_tree = self.git.ls_tree(baseline)
        return _changed_paths(self.store.scan_blobs(), base_tree)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> SyncStatus:
        """Describe pending changes without fetching or writing anything."""
        remote_head = self.git.rev_parse(self.tracking_ref)
        base = self._resolve_base(remote_head)
        base_tree = self.git.ls_tree(base) if base else {}
        remote_tree = self.git.ls_tree(remote_head) if remote_head else {}
        local_tree = self.store.scan_blobs()
        return SyncStatus(
            baseline=base,
            remote_head=remote_head,
            local_changes=sorted(
                _entity_ids(_changed_paths(local_tree, base_tree))
            ),
            remote_changes=sorted(
                _entity_ids(_changed_paths(remote_tree, base_tree))
            ),
            outbox=self.outbox.paths(),
        )


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def _changed_paths(side: dict[str, str], base: dict[str, str]) -> set[str]:
    """Paths added, removed or modified in *side* relative to *base*."""
    return {
        rel
        for rel in side.keys() | base.keys()
        if side.get(rel) != base.get(rel)
    }


def _entity_ids(paths: set[str]) -> set[str]:
    return {
        entity_id
        for entity_id in (entity_id_from_path(rel) for rel in paths)
        if entity_id
    }
