"""Sync result formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_sync_result`` -- full post-sync summary.
- ``format_sync_status`` -- pending changes before a sync.
- ``result_to_json`` -- structured dict for agent tool output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SyncResult, SyncStatus

from .models import SyncOutcome

_HEADLINES: dict[SyncOutcome, str] = {
    SyncOutcome.SUCCESS: "Sync complete",
    SyncOutcome.TRANSIENT_FAILURE: "Sync failed, retry later",
    SyncOutcome.PERMANENT_FAILURE: "Sync failed, remote refused the push",
    SyncOutcome.MANUAL_SYNC_REQUIRED: "Manual sync required",
    SyncOutcome.INTEGRITY_FAILURE: "Sync aborted, data integrity error",
}

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_result(result: SyncResult) -> str:
    """Format a sync result as human-readable text.

    Sections are only included when they contain at least one entry.
    "Already in sync" is printed only for a successful run that moved
    nothing; failed runs always say so.

    Args:
        result: The completed sync result.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    if result.already_in_sync:
        lines.append("Already in sync")
    else:
        lines.append(_HEADLINES[result.outcome])
    lines.append(f"Started: {result.started_at}")
    if result.completed_at:
        lines.append(f"Completed: {result.completed_at}")
    lines.append("")

    lines.append(
        f"{len(result.pushed)} pushed, {len(result.pulled)} pulled, "
        f"{len(result.conflicts)} conflicts, {result.attempts} push attempt(s)"
    )
    lines.append("")

    if result.pushed:
        lines.append("Pushed:")
        for entity_id in result.pushed:
            lines.append(f"  {entity_id}")
        lines.append("")

    if result.pulled:
        lines.append("Pulled:")
        for entity_id in result.pulled:
            lines.append(f"  {entity_id}")
        lines.append("")

    if result.conflicts:
        lines.append("Merged conflicts:")
        for conflict in result.conflicts:
            fields = ", ".join(conflict.fields) or "no field conflicts"
            archived = len(conflict.attic_entries)
            lines.append(
                f"  {conflict.entity_id}: {fields} ({archived} archived)"
            )
        lines.append("")

    if result.error:
        lines.append(f"Error: {result.error}")
    if result.blocking_commit:
        lines.append(f"Blocking commit: {result.blocking_commit}")
    if result.saved_to_outbox:
        lines.append(
            f"Saved {len(result.saved_to_outbox)} file(s) to the outbox"
        )
    if result.corrective_action:
        lines.append(f"Action: {result.corrective_action}")

    return "\n".join(lines).rstrip()


def format_sync_status(status: SyncStatus) -> str:
    """Format pending changes as human-readable text."""
    lines = [
        f"Baseline: {status.baseline or '(none)'}",
        f"Remote:   {status.remote_head or '(no sync branch yet)'}",
        f"Ahead:    {status.ahead}",
        f"Behind:   {status.behind}",
    ]
    if status.outbox:
        lines.append(f"Outbox:   {len(status.outbox)} file(s) waiting")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def result_to_json(result: SyncResult) -> dict:
    """Convert a sync result to a structured dict for JSON serialisation.

    Args:
        result: The sync result.

    Returns:
        Dict with outcome, counts, and per-entity details.
    """
    data: dict = {
        "outcome": result.outcome.value,
        "ok": result.ok,
        "already_in_sync": result.already_in_sync,
        "direction": result.direction.value,
        "started_at": result.started_at,
        "completed_at": result.completed_at,
        "counts": {
            "pushed": len(result.pushed),
            "pulled": len(result.pulled),
            "conflicts": len(result.conflicts),
            "attempts": result.attempts,
        },
        "pushed": list(result.pushed),
        "pulled": list(result.pulled),
        "conflicts": [c.model_dump(mode="json") for c in result.conflicts],
        "commit": result.commit,
        "phases": [phase.value for phase in result.phases],
    }
    if result.error:
        data["error"] = result.error
        data["corrective_action"] = result.corrective_action
    if result.blocking_commit:
        data["blocking_commit"] = result.blocking_commit
    if result.saved_to_outbox:
        data["saved_to_outbox"] = list(result.saved_to_outbox)
    return data
