"""Shared pytest fixtures for tbd-core tests."""

import os
import shutil
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tbd_core.model.entities import Issue


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "git: mark test as requiring a git executable"
    )


def pytest_collection_modifyitems(config, items):
    """Skip git tests when git is not installed."""
    if shutil.which("git") is not None:
        return
    skip_git = pytest.mark.skip(reason="git executable not found")
    for item in items:
        if "git" in item.keywords:
            item.add_marker(skip_git)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic clock; each replica in a test gets its own."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 7, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@pytest.fixture
def make_issue():
    """Factory fixture for issues with sensible defaults."""

    def _make(**fields) -> Issue:
        data = {
            "id": "is-ab12cd",
            "title": "Fix login",
            "created_at": "2025-01-07T10:00:00.000Z",
            "updated_at": "2025-01-07T10:00:00.000Z",
        }
        data.update(fields)
        return Issue.model_validate(data)

    return _make


# ---------------------------------------------------------------------------
# Git repositories
# ---------------------------------------------------------------------------


@pytest.fixture
def git_env(tmp_path: Path) -> dict[str, str]:
    """Environment that isolates git from the developer's own config."""
    home = tmp_path / "home"
    home.mkdir()
    return {
        "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        "HOME": str(home),
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_AUTHOR_NAME": "Test User",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test User",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }


def run_git(cwd: Path, env: dict[str, str], *args: str) -> str:
    """Run a git command in *cwd* for test setup and assertions."""
    proc = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        check=True,
    )
    return proc.stdout.strip()


@pytest.fixture
def remote_repo(tmp_path: Path, git_env) -> Path:
    """A bare repository standing in for the shared remote."""
    path = tmp_path / "remote.git"
    path.mkdir()
    run_git(path, git_env, "init", "--bare", "--quiet")
    return path


@pytest.fixture
def make_replica(tmp_path: Path, git_env, remote_repo):
    """Factory fixture: a fresh git clone of the remote with tbd initialized.

    Each replica has its own clock so tests can order writes.
    """
    from tbd_core.api import TbdStore

    def _make(name: str, **kwargs) -> TbdStore:
        root = tmp_path / name
        root.mkdir()
        run_git(root, git_env, "init", "--quiet")
        run_git(root, git_env, "remote", "add", "origin", str(remote_repo))
        kwargs.setdefault("clock", FakeClock())
        return TbdStore.init(root, environ=git_env, **kwargs)

    return _make
