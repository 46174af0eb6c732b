"""Pydantic models for the git sync protocol.

Defines the data contracts shared by the protocol, the facade and the
reporter:

- ``SyncPhase``: states of the sync state machine.
- ``SyncDirection``: which way data may flow.
- ``SyncOutcome``: typed result category the caller must act on.
- ``SyncConflict``: one entity reconciled by the merge engine.
- ``SyncResult``: outcome of one sync run.
- ``SyncStatus``: read-only view of pending changes.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class SyncPhase(str, Enum):
    """States of the sync state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    MERGING = "merging"
    COMMITTING = "committing"
    PUSHING = "pushing"
    RETRY_PULL = "retry_pull"
    DONE = "done"
    FAILED = "failed"


class SyncDirection(str, Enum):
    BOTH = "both"
    PULL = "pull"
    PUSH = "push"


class SyncOutcome(str, Enum):
    """How a sync run ended.

    Only ``SUCCESS`` means the remote holds this replica's changes.
    """

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    MANUAL_SYNC_REQUIRED = "manual_sync_required"
    INTEGRITY_FAILURE = "integrity_failure"


class SyncConflict(BaseModel):
    """An entity both sides changed, reconciled field by field.

    Attributes:
        entity_id: The merged entity.
        fields: Fields both sides changed to different values.
        attic_entries: Ids of archived losing values.
    """

    entity_id: str
    fields: list[str] = []
    attic_entries: list[str] = []

    model_config = {"frozen": True}


class SyncResult(BaseModel):
    """Result of one sync run.

    Attributes:
        outcome: Typed result category.
        direction: Requested direction.
        pushed: Entity ids whose changes landed on the remote.
        pulled: Entity ids updated locally from the remote.
        conflicts: Entities reconciled by the merge engine.
        attempts: Push attempts made.
        commit: Commit now at the head of the remote sync branch.
        blocking_commit: Remote head that kept rejecting our push.
        error: Human-readable error for failed runs.
        corrective_action: What the caller should do next.
        saved_to_outbox: Paths preserved in the local outbox.
        phases: State machine transitions, in order.
        started_at: ISO 8601 start timestamp.
        completed_at: ISO 8601 completion timestamp.
    """

    outcome: SyncOutcome
    direction: SyncDirection = SyncDirection.BOTH
    pushed: list[str] = []
    pulled: list[str] = []
    conflicts: list[SyncConflict] = []
    attempts: int = 0
    commit: str | None = None
    blocking_commit: str | None = None
    error: str | None = None
    corrective_action: str | None = None
    saved_to_outbox: list[str] = []
    phases: list[SyncPhase] = []
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return self.outcome == SyncOutcome.SUCCESS

    @property
    def already_in_sync(self) -> bool:
        """True only for a successful run that moved nothing."""
        return self.ok and not self.pushed and not self.pulled

    def summary(self) -> str:
        """Format a human-readable summary of the sync run.

        Returns:
            Multi-line summary string with counts.
        """
        lines = [
            f"Sync {self.outcome.value} ({self.direction.value})",
            f"  Pushed:    {len(self.pushed)}",
            f"  Pulled:    {len(self.pulled)}",
            f"  Conflicts: {len(self.conflicts)}",
            f"  Attempts:  {self.attempts}",
        ]
        if self.error:
            lines.append(f"  Error:     {self.error}")
        return "\n".join(lines)


class SyncStatus(BaseModel):
    """Pending changes relative to the last reconciled commit.

    Computed from local refs only; no network access.
    """

    baseline: str | None = None
    remote_head: str | None = None
    local_changes: list[str] = []
    remote_changes: list[str] = []
    outbox: list[str] = []

    model_config = {"frozen": True}

    @property
    def ahead(self) -> int:
        return len(self.local_changes)

    @property
    def behind(self) -> int:
        return len(self.remote_changes)
