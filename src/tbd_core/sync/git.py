"""Thin wrapper around git plumbing commands.

``GitRunner`` runs ``git`` as a subprocess with an explicit working
directory and a sanitized environment: ambient ``GIT_DIR``,
``GIT_WORK_TREE`` and ``GIT_INDEX_FILE`` are dropped so nothing leaks in
from the caller's shell, and callers that need a private index pass
``GIT_INDEX_FILE`` explicitly through ``env``.  Failures raise
``GitCommandError`` classified by ``classify_git_error()``.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from tbd_core.config_schema import IdentityConfig
from tbd_core.errors import GitCommandError, GitErrorKind

logger = logging.getLogger(__name__)

ZERO_OID = "0" * 40

_STRIPPED_ENV = (
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
    "GIT_NAMESPACE",
    "GIT_PREFIX",
)

_NON_FAST_FORWARD_MARKERS = (
    "non-fast-forward",
    "fetch first",
    "[rejected]",
    "stale info",
    "cannot lock ref",
)
_PERMANENT_MARKERS = (
    "permission denied",
    "permission to",
    "authentication failed",
    "could not read username",
    "access denied",
    "repository not found",
    "does not appear to be a git repository",
    "protected branch",
    "pre-receive hook declined",
)
_MISSING_REF_MARKERS = (
    "couldn't find remote ref",
    "unknown revision",
    "not a valid object name",
    "bad revision",
)
_TRANSIENT_MARKERS = (
    "could not resolve host",
    "connection refused",
    "connection reset",
    "connection timed out",
    "timed out",
    "network is unreachable",
    "temporary failure",
    "the remote end hung up",
    "early eof",
    "unable to access",
)
_HTTP_PERMANENT = re.compile(r"\b40[13]\b")
_HTTP_TRANSIENT = re.compile(r"\b50[234]\b")


def classify_git_error(stderr: str) -> GitErrorKind:
    """Map git's error output to a ``GitErrorKind``.

    Order matters: a rejected push mentioning the remote URL must not be
    mistaken for a network error, and an HTTP 403 reported as "unable to
    access" is permanent, not transient.
    """
    text = stderr.lower()
    if any(marker in text for marker in _NON_FAST_FORWARD_MARKERS):
        return GitErrorKind.NON_FAST_FORWARD
    if _HTTP_PERMANENT.search(text) or any(
        marker in text for marker in _PERMANENT_MARKERS
    ):
        return GitErrorKind.PERMANENT
    if any(marker in text for marker in _MISSING_REF_MARKERS):
        return GitErrorKind.MISSING_REF
    if _HTTP_TRANSIENT.search(text) or any(
        marker in text for marker in _TRANSIENT_MARKERS
    ):
        return GitErrorKind.TRANSIENT
    return GitErrorKind.UNKNOWN


class GitRunner:
    """Run git commands against one repository.

    Args:
        repo_root: Working directory for every command.
        identity: Author/committer for commits made by the sync.
        timeout: Per-command timeout in seconds.
        environ: Base environment.  Defaults to ``os.environ``.
    """

    def __init__(
        self,
        repo_root: Path,
        identity: IdentityConfig | None = None,
        timeout: float = 120.0,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.timeout = timeout
        identity = identity or IdentityConfig()
        base = dict(os.environ if environ is None else environ)
        for key in _STRIPPED_ENV:
            base.pop(key, None)
        base.update(
            {
                "GIT_AUTHOR_NAME": identity.name,
                "GIT_AUTHOR_EMAIL": identity.email,
                "GIT_COMMITTER_NAME": identity.name,
                "GIT_COMMITTER_EMAIL": identity.email,
                "GIT_TERMINAL_PROMPT": "0",
                "LC_ALL": "C",
            }
        )
        self._env = base
        self._git_dir: Path | None = None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        *args: str,
        input: bytes | None = None,
        env: Mapping[str, str] | None = None,
    ) -> bytes:
        """Run ``git <args>`` and return raw stdout.

        Raises:
            GitCommandError: On a non-zero exit, a timeout, or a missing
                git executable.
        """
        command = list(args)
        run_env = dict(self._env)
        if env:
            run_env.update(env)
        logger.debug("git %s", " ".join(command))
        try:
            proc = subprocess.run(
                ["git", *command],
                cwd=self.repo_root,
                input=input,
                capture_output=True,
                env=run_env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitCommandError(
                command,
                -1,
                f"timed out after {self.timeout}s",
                GitErrorKind.TRANSIENT,
            ) from None
        except FileNotFoundError:
            raise GitCommandError(
                command, -1, "git executable not found", GitErrorKind.PERMANENT
            ) from None

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace")
            stderr += proc.stdout.decode("utf-8", errors="replace")
            raise GitCommandError(
                command, proc.returncode, stderr, classify_git_error(stderr)
            )
        return proc.stdout

    def text(self, *args: str, **kwargs) -> str:
        return self.run(*args, **kwargs).decode("utf-8").strip()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def git_dir(self) -> Path:
        if self._git_dir is None:
            self._git_dir = Path(self.text("rev-parse", "--absolute-git-dir"))
        return self._git_dir

    def rev_parse(self, ref: str) -> str | None:
        """Return the commit *ref* points to, or ``None``."""
        try:
            out = self.text(
                "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"
            )
        except GitCommandError:
            return None
        return out or None

    def object_exists(self, oid: str) -> bool:
        try:
            self.run("cat-file", "-e", f"{oid}^{{commit}}")
        except GitCommandError:
            return False
        return True

    def remote_exists(self, remote: str) -> bool:
        return remote in self.text("remote").split()

    def merge_base(self, a: str, b: str) -> str | None:
        try:
            return self.text("merge-base", a, b) or None
        except GitCommandError:
            return None

    def ls_tree(self, commit: str) -> dict[str, str]:
        """Return ``{path: blob id}`` for every file in *commit*."""
        out = self.run("ls-tree", "-r", "-z", "--full-tree", commit)
        result: dict[str, str] = {}
        for record in out.split(b"\0"):
            if not record:
                continue
            meta, _, path = record.partition(b"\t")
            _mode, kind, oid = meta.decode("ascii").split()
            if kind == "blob":
                result[path.decode("utf-8")] = oid
        return result

    def cat_blob(self, oid: str) -> bytes:
        return self.run("cat-file", "blob", oid)

    def show_file(self, commit: str, path: str) -> bytes | None:
        try:
            return self.run("cat-file", "blob", f"{commit}:{path}")
        except GitCommandError:
            return None

    # ------------------------------------------------------------------
    # Object and ref writes
    # ------------------------------------------------------------------

    def hash_files(self, paths: Sequence[Path]) -> list[str]:
        """Write *paths* into the object store; return their blob ids."""
        if not paths:
            return []
        payload = "".join(f"{p}\n" for p in paths).encode("utf-8")
        out = self.text(
            "hash-object", "-w", "--no-filters", "--stdin-paths", input=payload
        )
        return out.split()

    def commit_tree(
        self, tree: str, message: str, parent: str | None = None
    ) -> str:
        args = ["commit-tree", tree, "-m", message]
        if parent:
            args[2:2] = ["-p", parent]
        return self.text(*args)

    def update_ref(
        self, ref: str, new: str, old: str | None = None
    ) -> None:
        """Point *ref* at *new*; with *old*, only if it still equals *old*."""
        args = ["update-ref", ref, new]
        if old is not None:
            args.append(old)
        self.run(*args)

    def delete_ref(self, ref: str) -> None:
        try:
            self.run("update-ref", "-d", ref)
        except GitCommandError:
            logger.debug("Ref %s already absent", ref)

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    def fetch(self, remote: str, branch: str) -> str | None:
        """Fetch *branch* into its remote-tracking ref.

        Returns:
            The fetched commit, or ``None`` if the remote has no such
            branch yet.
        """
        tracking = f"refs/remotes/{remote}/{branch}"
        try:
            self.run(
                "fetch",
                "--no-tags",
                "--quiet",
                remote,
                f"+refs/heads/{branch}:{tracking}",
            )
        except GitCommandError as exc:
            if exc.kind == GitErrorKind.MISSING_REF:
                self.delete_ref(tracking)
                return None
            raise
        return self.rev_parse(tracking)

    def push(self, remote: str, commit: str, branch: str) -> None:
        """Push *commit* to ``refs/heads/<branch>`` without forcing."""
        self.run(
            "push",
            "--quiet",
            "--porcelain",
            remote,
            f"{commit}:refs/heads/{branch}",
        )
