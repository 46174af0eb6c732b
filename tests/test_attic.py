"""Tests for the attic archive of discarded merge values."""

import pytest
import yaml

from tbd_core.attic import AtticArchive, patch_changes
from tbd_core.errors import NotFoundError
from tbd_core.merge.engine import merge
from tbd_core.model.attic import AtticEntry, AtticSide, MergeSide, RestorePatch

T1 = "2025-01-07T10:00:00.000Z"
T2 = "2025-01-07T11:00:00.000Z"


@pytest.fixture
def archive(tmp_path, clock):
    return AtticArchive(tmp_path / "data-sync", clock=clock)


@pytest.fixture
def priority_entry(make_issue) -> AtticEntry:
    """The single entry produced by a priority conflict."""
    local = make_issue(priority=1, updated_at=T1)
    remote = make_issue(priority=3, updated_at=T2)
    (entry,) = merge(local, remote).attic_entries
    return entry


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestAtticModels:
    def test_entry_id_is_deterministic(self, priority_entry, make_issue):
        local = make_issue(priority=1, updated_at=T1)
        remote = make_issue(priority=3, updated_at=T2)
        (again,) = merge(local, remote).attic_entries
        assert again.entry_id == priority_entry.entry_id
        assert len(priority_entry.entry_id) == 16

    def test_entry_id_depends_on_value(self):
        side = AtticSide(
            side=MergeSide.LOCAL, version=1, updated_at=T1, content_hash="a"
        )
        other = AtticSide(
            side=MergeSide.REMOTE, version=1, updated_at=T2, content_hash="b"
        )
        first = AtticEntry.compute_id("is-ab12cd", "priority", 1, side, other)
        second = AtticEntry.compute_id("is-ab12cd", "priority", 2, side, other)
        assert first != second

    def test_merge_side_other(self):
        assert MergeSide.LOCAL.other is MergeSide.REMOTE
        assert MergeSide.REMOTE.other is MergeSide.LOCAL


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


class TestRecord:
    def test_record_writes_yaml(self, archive, tmp_path, priority_entry):
        stored = archive.record(priority_entry)
        path = (
            tmp_path
            / "data-sync"
            / "attic"
            / "is-ab12cd"
            / f"{priority_entry.entry_id}.yml"
        )
        data = yaml.safe_load(path.read_text())
        assert data["lost_value"] == 1
        assert data["field"] == "priority"
        assert stored.recorded_at == "2025-01-07T10:00:00.000Z"

    def test_record_is_idempotent(self, archive, clock, priority_entry):
        """Replaying the same merge never duplicates or rewrites an entry."""
        first = archive.record(priority_entry)
        clock.advance(60)
        second = archive.record(priority_entry)
        assert second == first
        assert len(archive.list()) == 1

    def test_record_all(self, archive, make_issue):
        local = make_issue(priority=1, title="Mine", updated_at=T1)
        remote = make_issue(priority=3, title="Theirs", updated_at=T2)
        entries = merge(local, remote).attic_entries
        assert len(archive.record_all(entries)) == 2
        assert {e.field for e in archive.list("is-ab12cd")} == {
            "priority",
            "title",
        }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_list_empty(self, archive):
        assert archive.list() == []

    def test_list_newest_first(self, archive, clock, make_issue):
        first = merge(
            make_issue(priority=1, updated_at=T1),
            make_issue(priority=3, updated_at=T2),
        ).attic_entries[0]
        archive.record(first)
        clock.advance(30)
        second = merge(
            make_issue(title="A", updated_at=T1),
            make_issue(title="B", updated_at=T2),
        ).attic_entries[0]
        archive.record(second)
        assert [e.field for e in archive.list()] == ["title", "priority"]

    def test_list_filters_by_entity(self, archive, priority_entry):
        archive.record(priority_entry)
        assert archive.list("is-other0") == []
        assert len(archive.list("is-ab12cd")) == 1

    def test_unreadable_entry_skipped(self, archive, tmp_path, priority_entry):
        archive.record(priority_entry)
        bad = tmp_path / "data-sync" / "attic" / "is-ab12cd" / "broken.yml"
        bad.write_text("field: [", encoding="utf-8")
        assert len(archive.list()) == 1

    def test_show(self, archive, priority_entry):
        archive.record(priority_entry)
        shown = archive.show(priority_entry.entry_id)
        assert shown.lost_value == 1

    def test_show_missing(self, archive):
        with pytest.raises(NotFoundError):
            archive.show("0000000000000000")


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class TestRestore:
    def test_restore_returns_patch_only(self, archive, priority_entry):
        archive.record(priority_entry)
        patch = archive.restore(priority_entry.entry_id)
        assert patch == RestorePatch(
            entry_id=priority_entry.entry_id,
            entity_id="is-ab12cd",
            field="priority",
            value=1,
        )

    def test_patch_top_level_field(self, make_issue):
        patch = RestorePatch(
            entry_id="x", entity_id="is-ab12cd", field="priority", value=1
        )
        assert patch_changes(make_issue(), patch) == {"priority": 1}

    def test_patch_namespace_value(self, make_issue):
        issue = make_issue(extensions={"gh": {"number": 8, "state": "open"}})
        patch = RestorePatch(
            entry_id="x",
            entity_id="is-ab12cd",
            field="extensions.gh.number",
            value=7,
        )
        assert patch_changes(issue, patch) == {
            "extensions": {"gh": {"number": 7, "state": "open"}}
        }
        assert issue.extensions["gh"]["number"] == 8

    def test_patch_keyed_list(self, make_issue):
        issue = make_issue(
            dependencies=[
                {"target": "is-aaaa", "relation": "related"},
                {"target": "is-bbbb", "relation": "blocks"},
            ]
        )
        patch = RestorePatch(
            entry_id="x",
            entity_id="is-ab12cd",
            field="dependencies[is-aaaa]",
            value=[{"relation": "blocks"}],
        )
        changes = patch_changes(issue, patch)
        assert sorted(
            (d["target"], d["relation"]) for d in changes["dependencies"]
        ) == [("is-aaaa", "blocks"), ("is-bbbb", "blocks")]

    def test_patch_wrong_entity(self, make_issue):
        patch = RestorePatch(
            entry_id="x", entity_id="is-other0", field="priority", value=1
        )
        with pytest.raises(ValueError):
            patch_changes(make_issue(), patch)
