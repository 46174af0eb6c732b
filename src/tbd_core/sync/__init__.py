"""Git-based synchronization of the data directory.

Public API for pushing and pulling entity files through a dedicated
sync branch.

Architecture
------------
The data directory (``.tbd/data-sync/``) mirrors the tree of the sync
branch.  ``SyncProtocol`` diffs both against the last reconciled commit,
merges entities changed on both sides, and commits using a private index
file so the user's staging area is never touched.

Modules:

- ``protocol`` -- ``SyncProtocol``: the fetch/merge/commit/push state machine.
- ``git``      -- ``GitRunner``: subprocess wrapper and error classification.
- ``state``    -- ``SyncStateStore``: local-only baseline persistence.
- ``outbox``   -- ``Outbox``: holding area for changes the remote refused.
- ``models``   -- ``SyncPhase``, ``SyncDirection``, ``SyncOutcome``,
  ``SyncConflict``, ``SyncResult``, ``SyncStatus``.
- ``reporter`` -- Human-readable and JSON result formatting.
"""

from .git import GitRunner, classify_git_error
from .models import (
    SyncConflict,
    SyncDirection,
    SyncOutcome,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from .outbox import Outbox
from .protocol import SyncProtocol
from .reporter import format_sync_result, format_sync_status, result_to_json
from .state import SyncStateStore

__all__ = [
    "GitRunner",
    "Outbox",
    "SyncConflict",
    "SyncDirection",
    "SyncOutcome",
    "SyncPhase",
    "SyncProtocol",
    "SyncResult",
    "SyncStateStore",
    "SyncStatus",
    "classify_git_error",
    "format_sync_result",
    "format_sync_status",
    "result_to_json",
]
