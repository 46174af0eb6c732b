"""Typed error hierarchy shared by every tbd_core component.

Errors are grouped the way callers have to react to them:

- ``IntegrityError`` -- corrupted or contradictory data.  Fatal, never
  retried.
- ``UpgradeRequiredError`` -- data written by a newer format than this
  reader understands.
- ``GitCommandError`` -- a failed git invocation, classified so the sync
  protocol can decide between retrying, re-pulling and giving up.

``corrective_action()`` maps an error to the next step a human or agent
should take, mirroring the corrective-action table used by tool
responses.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class TbdError(Exception):
    """Base class for all tbd_core errors."""


# ---------------------------------------------------------------------------
# Integrity errors
# ---------------------------------------------------------------------------


class IntegrityError(TbdError):
    """Data violates an invariant and cannot be reconciled automatically."""


class ImmutableFieldError(IntegrityError):
    """Two versions of an entity disagree on a field that never changes."""

    def __init__(
        self, entity_id: str, field: str, local: Any, remote: Any
    ) -> None:
        self.entity_id = entity_id
        self.field = field
        self.local = local
        self.remote = remote
        super().__init__(
            f"Immutable field '{field}' differs for {entity_id}: "
            f"local={local!r} remote={remote!r}"
        )


class DecodeErrorKind(str, Enum):
    """Why a file could not be decoded into an entity."""

    MALFORMED_SYNTAX = "malformed_syntax"
    SCHEMA_VALIDATION = "schema_validation"
    UNKNOWN_ENTITY_TYPE = "unknown_entity_type"


class DecodeError(IntegrityError):
    """Canonical bytes could not be turned back into an entity."""

    kind: DecodeErrorKind = DecodeErrorKind.MALFORMED_SYNTAX

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        self.detail = message
        where = f"{path}: " if path else ""
        super().__init__(f"{where}{message}")


class MalformedSyntaxError(DecodeError):
    kind = DecodeErrorKind.MALFORMED_SYNTAX


class SchemaValidationError(DecodeError):
    kind = DecodeErrorKind.SCHEMA_VALIDATION


class UnknownEntityTypeError(DecodeError):
    kind = DecodeErrorKind.UNKNOWN_ENTITY_TYPE


# ---------------------------------------------------------------------------
# Format / lifecycle errors
# ---------------------------------------------------------------------------


class UpgradeRequiredError(TbdError):
    """Data declares a format newer than this version supports."""

    def __init__(self, found: str, supported: str) -> None:
        self.found = found
        self.supported = supported
        super().__init__(
            f"Data format '{found}' is newer than supported "
            f"format '{supported}'; upgrade tbd to continue"
        )


class NotInitializedError(TbdError):
    """The repository has no ``.tbd/`` directory."""


class NotFoundError(TbdError):
    """No entity with the requested id exists."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Entity not found: {entity_id}")


class IdCollisionError(TbdError):
    """An exclusive create found the id already taken (or retired)."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Entity id already in use: {entity_id}")


# ---------------------------------------------------------------------------
# Git / sync errors
# ---------------------------------------------------------------------------


class GitErrorKind(str, Enum):
    """Classification of a failed git command."""

    NON_FAST_FORWARD = "non_fast_forward"
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    MISSING_REF = "missing_ref"
    UNKNOWN = "unknown"


class GitCommandError(TbdError):
    """A git subprocess exited non-zero (or timed out)."""

    def __init__(
        self,
        command: list[str],
        returncode: int,
        stderr: str,
        kind: GitErrorKind = GitErrorKind.UNKNOWN,
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.kind = kind
        summary = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(
            f"git {' '.join(command[:2])} failed ({returncode}): {summary}"
        )


class SyncError(TbdError):
    """The sync protocol hit an unrecoverable internal condition."""


# ---------------------------------------------------------------------------
# Corrective actions
# ---------------------------------------------------------------------------

_CORRECTIVE_ACTIONS: dict[str, str] = {
    "immutable": (
        "Two replicas disagree on an entity's id or type. Inspect both "
        "files and remove the corrupted copy before syncing again."
    ),
    "decode": (
        "Fix or delete the malformed entity file, then re-run the command."
    ),
    "upgrade": "Upgrade tbd to a version that understands this data format.",
    "not_initialized": "Run 'tbd init' in the repository root first.",
    "not_found": "Use 'tbd list' to find existing entity ids.",
    "collision": "Retry the create; a fresh id will be generated.",
    "permanent": (
        "Check push permissions for the sync remote. Local changes were "
        "saved to .tbd/workspaces/outbox and will be retried on next sync."
    ),
    "transient": "Network or remote unavailable; retry the sync later.",
    "non_fast_forward": (
        "The remote kept moving. Run sync again, or resolve manually "
        "against the blocking commit."
    ),
    "git": "Inspect the git error output and repository state.",
    "sync": "Re-run sync; if the problem persists, delete .tbd/cache.",
}


def corrective_action(error: BaseException) -> str:
    """Return the next step a caller should take to recover from *error*."""
    match error:
        case ImmutableFieldError():
            key = "immutable"
        case DecodeError():
            key = "decode"
        case UpgradeRequiredError():
            key = "upgrade"
        case NotInitializedError():
            key = "not_initialized"
        case NotFoundError():
            key = "not_found"
        case IdCollisionError():
            key = "collision"
        case GitCommandError(kind=GitErrorKind.PERMANENT):
            key = "permanent"
        case GitCommandError(kind=GitErrorKind.TRANSIENT):
            key = "transient"
        case GitCommandError(kind=GitErrorKind.NON_FAST_FORWARD):
            key = "non_fast_forward"
        case GitCommandError():
            key = "git"
        case _:
            key = "sync"
    return _CORRECTIVE_ACTIONS[key]
