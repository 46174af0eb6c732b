"""End-to-end tests for the git sync protocol.

Every test drives real git repositories: a bare repository stands in for
the shared remote and each replica is its own clone with ``.tbd/``
initialized.  Failures that real git cannot produce on demand (an HTTP
403, a flaky network) are injected by patching ``GitRunner.push``.

Covers:
- First push, no-op sync, pull into a second replica
- Concurrent edits merged with the loser archived, replicas converge
- Deletions propagate and retire the id
- Isolation from the caller's index, HEAD and working tree
- Permanent failure: typed result, nothing marked pushed, outbox saved
- Transient failure: bounded retries, no outbox
- Push race: re-pull and retry; exhaustion reports manual sync
- Pull-only and push-only directions
- Newer remote format refused
"""

from unittest.mock import patch

import pytest

from conftest import run_git
from tbd_core.config_schema import SyncConfig, UnifiedConfig
from tbd_core.errors import GitCommandError, GitErrorKind
from tbd_core.migrate import META_FILE, meta_bytes
from tbd_core.sync.git import GitRunner
from tbd_core.sync.models import SyncDirection, SyncOutcome, SyncPhase
from tbd_core.sync.reporter import format_sync_result

pytestmark = pytest.mark.git

FORBIDDEN = GitCommandError(
    ["push", "origin"],
    128,
    "fatal: unable to access 'https://example.com/team/repo.git/': "
    "The requested URL returned error: 403",
    GitErrorKind.PERMANENT,
)


def _entity_rel(entity_id: str) -> str:
    return f"entities/{entity_id[:2]}/{entity_id}.md"


def _remote_head(remote_repo, git_env) -> str:
    return run_git(remote_repo, git_env, "rev-parse", "refs/heads/tbd-sync")


def _remote_files(remote_repo, git_env) -> list[str]:
    out = run_git(
        remote_repo, git_env, "ls-tree", "-r", "--name-only", "tbd-sync"
    )
    return out.splitlines()


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


class TestBasicSync:
    def test_first_sync_pushes(self, make_replica, remote_repo, git_env):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")

        result = alice.sync()

        assert result.outcome == SyncOutcome.SUCCESS
        assert result.pushed == [issue.id]
        assert result.attempts == 1
        assert result.commit == _remote_head(remote_repo, git_env)
        assert sorted(_remote_files(remote_repo, git_env)) == [
            _entity_rel(issue.id),
            META_FILE,
        ]
        assert result.phases[0] == SyncPhase.IDLE
        assert result.phases[-1] == SyncPhase.DONE
        assert SyncPhase.PUSHING in result.phases

    def test_second_sync_is_noop(self, make_replica, remote_repo, git_env):
        alice = make_replica("alice")
        alice.create("issue", title="Fix login")
        first = alice.sync()

        result = alice.sync()

        assert result.already_in_sync
        assert result.attempts == 0
        assert result.commit == first.commit
        assert format_sync_result(result).startswith("Already in sync")

    def test_local_branch_and_tracking_ref_advance(
        self, make_replica, git_env
    ):
        alice = make_replica("alice")
        alice.create("issue", title="Fix login")
        result = alice.sync()
        assert alice.git.rev_parse("refs/heads/tbd-sync") == result.commit
        assert (
            alice.git.rev_parse("refs/remotes/origin/tbd-sync")
            == result.commit
        )

    def test_second_replica_pulls(self, make_replica):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login", labels=["auth"])
        alice.sync()

        bob = make_replica("bob")
        result = bob.sync()

        assert result.ok
        assert result.pulled == [issue.id]
        assert result.pushed == []
        assert bob.get(issue.id) == issue

    def test_both_sides_new_entities(self, make_replica):
        alice = make_replica("alice")
        a_issue = alice.create("issue", title="From alice")
        alice.sync()
        bob = make_replica("bob")
        b_issue = bob.create("issue", title="From bob")

        result = bob.sync()

        assert result.pulled == [a_issue.id]
        assert result.pushed == [b_issue.id]
        alice.sync()
        assert alice.get(b_issue.id) == b_issue

    def test_status(self, make_replica):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")
        status = alice.sync_status()
        assert status.local_changes == [issue.id]
        assert status.remote_head is None

        alice.sync()
        status = alice.sync_status()
        assert status.ahead == 0
        assert status.behind == 0
        assert status.remote_head is not None

    async def test_sync_async(self, make_replica):
        alice = make_replica("alice")
        alice.create("issue", title="Fix login")
        result = await alice.sync_async()
        assert result.ok


# ---------------------------------------------------------------------------
# Concurrent edits
# ---------------------------------------------------------------------------


class TestConcurrentEdits:
    def test_conflicting_edit_merged_and_archived(self, make_replica):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")
        alice.sync()
        bob = make_replica("bob")
        bob.sync()

        alice._clock.advance(10)
        alice.update(issue.id, priority=1)
        bob._clock.advance(20)
        bob.update(issue.id, priority=3, labels=["urgent"])
        assert alice.sync().ok

        result = bob.sync()

        assert result.ok
        assert [c.entity_id for c in result.conflicts] == [issue.id]
        assert result.conflicts[0].fields == ["priority"]
        assert len(result.conflicts[0].attic_entries) == 1
        merged = bob.get(issue.id)
        assert merged.priority == 3
        assert merged.labels == ["urgent"]
        assert merged.version == 3

        entry = bob.attic_list(issue.id)[0]
        assert entry.lost_value == 1

        pull = alice.sync()
        assert pull.ok
        assert issue.id in pull.pulled
        rel = _entity_rel(issue.id)
        assert alice.entities.read_bytes(rel) == bob.entities.read_bytes(rel)
        assert [e.entry_id for e in alice.attic_list(issue.id)] == [
            entry.entry_id
        ]

    def test_non_overlapping_fields_merge_without_attic(self, make_replica):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")
        alice.sync()
        bob = make_replica("bob")
        bob.sync()

        alice._clock.advance(10)
        alice.update(issue.id, title="Fix login page")
        bob._clock.advance(20)
        bob.update(issue.id, assignee="bob")
        alice.sync()

        result = bob.sync()

        merged = bob.get(issue.id)
        assert merged.title == "Fix login page"
        assert merged.assignee == "bob"
        assert result.conflicts[0].fields == []
        assert bob.attic_list() == []

    def test_deletion_propagates(self, make_replica):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")
        alice.sync()
        bob = make_replica("bob")
        bob.sync()

        alice.delete(issue.id)
        alice.sync()
        result = bob.sync()

        assert result.ok
        assert bob.read(issue.id) is None
        assert bob.entities.is_retired(issue.id)


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


class TestIsolation:
    """Sync never touches the caller's index, HEAD or working tree."""

    def test_staged_changes_untouched(self, make_replica, git_env):
        alice = make_replica("alice")
        (alice.root / "notes.txt").write_text("work in progress\n")
        run_git(alice.root, git_env, "add", "notes.txt")
        index = alice.root / ".git" / "index"
        before = index.read_bytes()
        head_before = run_git(alice.root, git_env, "symbolic-ref", "HEAD")

        alice.create("issue", title="Fix login")
        assert alice.sync().ok

        assert index.read_bytes() == before
        assert run_git(alice.root, git_env, "symbolic-ref", "HEAD") == (
            head_before
        )
        assert run_git(
            alice.root, git_env, "diff", "--cached", "--name-only"
        ) == "notes.txt"
        assert run_git(alice.root, git_env, "ls-files") == "notes.txt"
        assert not (alice.git.git_dir() / "tbd-sync.index").exists()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestPermanentFailure:
    def test_forbidden_push_is_not_success(
        self, make_replica, remote_repo, git_env
    ):
        """A 403 is reported as a permanent failure with nothing pushed."""
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")

        with patch.object(GitRunner, "push", side_effect=FORBIDDEN) as push:
            result = alice.sync()

        assert push.call_count == 1
        assert result.outcome == SyncOutcome.PERMANENT_FAILURE
        assert result.pushed == []
        assert not result.already_in_sync
        assert "403" in result.error
        assert "outbox" in result.corrective_action
        assert _entity_rel(issue.id) in result.saved_to_outbox
        outbox = alice.tbd_dir / "workspaces" / "outbox"
        assert (outbox / _entity_rel(issue.id)).exists()
        assert "Already in sync" not in format_sync_result(result)
        assert run_git(remote_repo, git_env, "for-each-ref") == ""

    def test_next_sync_delivers_outbox(self, make_replica, remote_repo, git_env):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")
        with patch.object(GitRunner, "push", side_effect=FORBIDDEN):
            alice.sync()

        result = alice.sync()

        assert result.ok
        assert result.pushed == [issue.id]
        assert alice.sync_status().outbox == []
        assert _entity_rel(issue.id) in _remote_files(remote_repo, git_env)

    def test_delete_after_failure_stays_deleted(
        self, make_replica, remote_repo, git_env
    ):
        alice = make_replica("alice")
        issue = alice.create("issue", title="Fix login")
        with patch.object(GitRunner, "push", side_effect=FORBIDDEN):
            alice.sync()
        alice.delete(issue.id)

        result = alice.sync()

        assert result.ok
        assert alice.read(issue.id) is None
        assert alice.sync_status().outbox == []
        files = _remote_files(remote_repo, git_env)
        assert _entity_rel(issue.id) not in files
        assert f"tombstones/{issue.id[:2]}/{issue.id}" in files

    def test_missing_remote(self, tmp_path, git_env):
        from tbd_core.api import TbdStore

        root = tmp_path / "lonely"
        root.mkdir()
        run_git(root, git_env, "init", "--quiet")
        store = TbdStore.init(root, environ=git_env)
        issue = store.create("issue", title="Fix login")

        result = store.sync()

        assert result.outcome == SyncOutcome.PERMANENT_FAILURE
        assert _entity_rel(issue.id) in result.saved_to_outbox


class TestTransientFailure:
    def test_retries_then_reports(self, make_replica):
        config = UnifiedConfig(
            sync=SyncConfig(transient_retries=2, backoff_seconds=0)
        )
        alice = make_replica("alice", config=config)
        alice.create("issue", title="Fix login")
        error = GitCommandError(
            ["push"], 128, "Could not resolve host", GitErrorKind.TRANSIENT
        )

        with patch.object(GitRunner, "push", side_effect=error) as push:
            result = alice.sync()

        assert push.call_count == 3
        assert result.outcome == SyncOutcome.TRANSIENT_FAILURE
        assert result.pushed == []
        assert result.saved_to_outbox == []

    def test_recovers_within_retries(self, make_replica):
        config = UnifiedConfig(sync=SyncConfig(backoff_seconds=0))
        alice = make_replica("alice", config=config)
        issue = alice.create("issue", title="Fix login")
        real_push = alice.git.push
        error = GitCommandError(
            ["push"], 128, "Connection reset", GitErrorKind.TRANSIENT
        )

        calls = []

        def flaky_push(remote, commit, branch):
            calls.append(commit)
            if len(calls) == 1:
                raise error
            return real_push(remote, commit, branch)

        with patch.object(alice.git, "push", side_effect=flaky_push):
            result = alice.sync()

        assert result.ok
        assert len(calls) == 2
        assert result.attempts == 1
        assert result.pushed == [issue.id]


# ---------------------------------------------------------------------------
# Push races
# ---------------------------------------------------------------------------


class TestPushRace:
    def test_rejected_push_repulls_and_retries(self, make_replica):
        alice = make_replica("alice")
        bob = make_replica("bob")
        a_issue = alice.create("issue", title="From alice")
        b_issue = bob.create("issue", title="From bob")
        real_push = alice.git.push
        calls = []

        def racing_push(remote, commit, branch):
            calls.append(commit)
            if len(calls) == 1:
                # Bob lands first, between alice's fetch and push.
                assert bob.sync().ok
            return real_push(remote, commit, branch)

        with patch.object(alice.git, "push", side_effect=racing_push):
            result = alice.sync()

        assert result.ok
        assert result.attempts == 2
        assert SyncPhase.RETRY_PULL in result.phases
        assert result.pushed == [a_issue.id]
        assert result.pulled == [b_issue.id]

        bob.sync()
        assert bob.get(a_issue.id) == a_issue
        assert alice.get(b_issue.id) == b_issue

    def test_exhausted_attempts_require_manual_sync(
        self, make_replica, remote_repo, git_env
    ):
        config = UnifiedConfig(sync=SyncConfig(max_push_attempts=2))
        bob = make_replica("bob")
        bob.create("issue", title="From bob")
        bob.sync()
        alice = make_replica("alice", config=config)
        alice.create("issue", title="From alice")
        rejected = GitCommandError(
            ["push"],
            1,
            "! [rejected] tbd-sync -> tbd-sync (fetch first)",
            GitErrorKind.NON_FAST_FORWARD,
        )

        with patch.object(alice.git, "push", side_effect=rejected) as push:
            result = alice.sync()

        assert push.call_count == 2
        assert result.outcome == SyncOutcome.MANUAL_SYNC_REQUIRED
        assert result.pushed == []
        assert result.attempts == 2
        assert result.blocking_commit == _remote_head(remote_repo, git_env)
        assert result.phases[-1] == SyncPhase.FAILED


# ---------------------------------------------------------------------------
# Directions
# ---------------------------------------------------------------------------


class TestDirections:
    def test_pull_only(self, make_replica, remote_repo, git_env):
        alice = make_replica("alice")
        a_issue = alice.create("issue", title="From alice")
        alice.sync()
        bob = make_replica("bob")
        b_issue = bob.create("issue", title="From bob")

        result = bob.sync(SyncDirection.PULL)

        assert result.ok
        assert result.direction == SyncDirection.PULL
        assert result.pulled == [a_issue.id]
        assert result.pushed == []
        assert _entity_rel(b_issue.id) not in _remote_files(
            remote_repo, git_env
        )

        assert bob.sync().pushed == [b_issue.id]

    def test_push_only_refuses_unpulled_remote(
        self, make_replica, remote_repo, git_env
    ):
        alice = make_replica("alice")
        a_issue = alice.create("issue", title="From alice")
        alice.sync()
        bob = make_replica("bob")
        bob.create("issue", title="From bob")

        result = bob.sync(SyncDirection.PUSH)

        assert result.outcome == SyncOutcome.MANUAL_SYNC_REQUIRED
        assert result.blocking_commit == _remote_head(remote_repo, git_env)
        assert bob.read(a_issue.id) is None

    def test_push_only_after_pull(self, make_replica):
        alice = make_replica("alice")
        alice.create("issue", title="From alice")
        alice.sync()
        bob = make_replica("bob")
        bob.sync()
        issue = bob.create("issue", title="From bob")

        result = bob.sync(SyncDirection.PUSH)

        assert result.ok
        assert result.pushed == [issue.id]


# ---------------------------------------------------------------------------
# Format compatibility
# ---------------------------------------------------------------------------


class TestRemoteFormat:
    def test_newer_remote_format_refused(self, make_replica):
        alice = make_replica("alice")
        alice.create("issue", title="Fix login")
        alice.sync()
        bob = make_replica("bob")
        bob.entities.write_bytes(META_FILE, meta_bytes("f99"))
        assert bob.sync().ok

        alice.create("issue", title="Second")
        result = alice.sync()

        assert result.outcome == SyncOutcome.INTEGRITY_FAILURE
        assert result.pushed == []
        assert "Upgrade tbd" in result.corrective_action
        assert alice.entities.read_bytes(META_FILE) == meta_bytes()
