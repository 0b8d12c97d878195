"""Tests for snapshot storage."""

import json
import os
import time
import uuid

import pytest

from kodama.config import KodamaConfig
from kodama.errors import SnapshotLoadError, SnapshotValidationError
from kodama.events import read_events
from kodama.storage import SnapshotStore


def _age_file(path, days):
    past = time.time() - days * 86400
    os.utime(path, (past, past))


def test_save_and_load_round_trip(store, make_snapshot):
    data = make_snapshot(
        title="Implement auth",
        decisions=["Use JWT"],
        nextSteps=["Write tests"],
        tags=["Auth", "backend", "auth"],
        gitBranch="feature/auth",
    )

    saved = store.save_snapshot(data)
    loaded = store.load_snapshot(data["id"])

    assert loaded == saved
    assert loaded.title == "Implement auth"
    assert loaded.next_steps == ["Write tests"]
    assert loaded.tags == ["auth", "backend"]

    raw = json.loads(store.snapshot_path(data["id"]).read_text())
    assert raw["nextSteps"] == ["Write tests"]
    assert raw["gitBranch"] == "feature/auth"
    assert "claudeSessionId" not in raw


def test_save_appends_created_event(store, make_snapshot):
    data = make_snapshot()
    store.save_snapshot(data)

    events = read_events(store.paths.events_file)
    assert [e.event_type for e in events] == ["snapshot_created"]
    assert events[0].snapshot_id == data["id"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"title": ""},
        {"title": "   "},
        {"id": "not-a-uuid"},
        {"timestamp": "yesterday"},
        {"step": "deploying"},
        {"version": "2.0.0"},
    ],
)
def test_invalid_snapshot_writes_nothing(store, make_snapshot, overrides):
    data = make_snapshot(**overrides)

    with pytest.raises(SnapshotValidationError) as excinfo:
        store.save_snapshot(data)

    assert excinfo.value.exit_code == 2
    assert list(store.paths.snapshots.glob("*.json")) == []
    assert not store.paths.events_file.exists()


@pytest.mark.parametrize("bad_id", ["../../../etc/passwd", "..", "a/b", "a\\b", "x\x00y", ""])
def test_traversal_ids_rejected(store, bad_id):
    with pytest.raises(SnapshotValidationError):
        store.load_snapshot(bad_id)


def test_load_missing_returns_none(store):
    assert store.load_snapshot(str(uuid.uuid4())) is None


def test_load_corrupt_raises(store):
    snapshot_id = str(uuid.uuid4())
    store.paths.snapshot_file(snapshot_id).write_text("{not json")

    with pytest.raises(SnapshotLoadError):
        store.load_snapshot(snapshot_id)


def test_latest_applies_decision_cap_without_rewriting(store, make_snapshot):
    decisions = [f"decision {i}" for i in range(10)]
    data = make_snapshot(decisions=decisions)
    store.save_snapshot(data)

    latest = store.get_latest_snapshot()

    assert latest.decisions == decisions[-5:]
    raw = json.loads(store.snapshot_path(data["id"]).read_text())
    assert raw["decisions"] == decisions
    assert store.load_snapshot(data["id"]).decisions == decisions


def test_no_limit_disables_cap(temp_root, make_snapshot):
    config = KodamaConfig.for_data_root(temp_root, auto_archive=False, no_limit=True)
    store = SnapshotStore(config)
    decisions = [f"d{i}" for i in range(10)]
    store.save_snapshot(make_snapshot(decisions=decisions))

    assert store.get_latest_snapshot().decisions == decisions


def test_latest_uses_modification_time(store, make_snapshot):
    first = make_snapshot(title="A")
    second = make_snapshot(title="B")
    store.save_snapshot(first)
    store.save_snapshot(second)
    _age_file(store.snapshot_path(first["id"]), 1)

    assert store.get_latest_snapshot().title == "B"

    _age_file(store.snapshot_path(second["id"]), 2)
    assert store.get_latest_snapshot().title == "A"


def test_latest_skips_corrupt_files(store, make_snapshot):
    good = make_snapshot(title="Good")
    store.save_snapshot(good)
    _age_file(store.snapshot_path(good["id"]), 1)
    store.paths.snapshot_file(str(uuid.uuid4())).write_text("garbage")

    assert store.get_latest_snapshot().title == "Good"


def test_latest_empty_store(store):
    assert store.get_latest_snapshot() is None


def test_list_sorted_newest_first_and_skips_corrupt(store, make_snapshot):
    store.save_snapshot(make_snapshot(title="old", timestamp="2026-01-01T00:00:00+00:00"))
    store.save_snapshot(make_snapshot(title="new", timestamp="2026-03-01T00:00:00Z"))
    store.paths.snapshot_file(str(uuid.uuid4())).write_text("[]")

    titles = [s.title for s in store.list_snapshots()]

    assert titles == ["new", "old"]


def test_oversized_file_is_corrupt(store):
    snapshot_id = str(uuid.uuid4())
    store.paths.snapshot_file(snapshot_id).write_text(" " * (1024 * 1024 + 1))

    with pytest.raises(SnapshotLoadError):
        store.load_snapshot(snapshot_id)


def test_archive_moves_old_files_byte_identical(store, make_snapshot):
    old = make_snapshot(title="old")
    fresh = make_snapshot(title="fresh")
    store.save_snapshot(old)
    store.save_snapshot(fresh)
    old_path = store.snapshot_path(old["id"])
    original_bytes = old_path.read_bytes()
    _age_file(old_path, 40)

    result = store.archive_old_snapshots(30)

    assert result.succeeded == [old["id"]]
    assert not old_path.exists()
    assert store.paths.archived_snapshot_file(old["id"]).read_bytes() == original_bytes
    assert store.snapshot_path(fresh["id"]).exists()
    # Archived snapshots stay loadable by id
    assert store.load_snapshot(old["id"]).title == "old"
    assert [s.title for s in store.list_snapshots()] == ["fresh"]
    assert {s.title for s in store.list_snapshots(include_archived=True)} == {"old", "fresh"}

    events = read_events(store.paths.events_file)
    assert events[-1].event_type == "snapshot_archived"


def test_archive_dry_run_moves_nothing(store, make_snapshot):
    data = make_snapshot()
    store.save_snapshot(data)
    _age_file(store.snapshot_path(data["id"]), 40)

    result = store.archive_old_snapshots(30, dry_run=True)

    assert result.succeeded == [data["id"]]
    assert store.snapshot_path(data["id"]).exists()


def test_auto_archive_respects_config(temp_root, make_snapshot):
    disabled = SnapshotStore(KodamaConfig.for_data_root(temp_root, auto_archive=False))
    data = make_snapshot()
    disabled.save_snapshot(data)
    _age_file(disabled.snapshot_path(data["id"]), 40)

    assert disabled.trigger_auto_archive() is None
    assert disabled.snapshot_path(data["id"]).exists()

    enabled = SnapshotStore(KodamaConfig.for_data_root(temp_root, archive_threshold_days=30))
    assert enabled.trigger_auto_archive().count == 1
    assert not enabled.snapshot_path(data["id"]).exists()


def test_resolve_snapshot_id(store, make_snapshot):
    a = make_snapshot(id="aaaa1111-0000-4000-8000-000000000001")
    b = make_snapshot(id="aaaa2222-0000-4000-8000-000000000002")
    store.save_snapshot(a)
    store.save_snapshot(b)

    assert store.resolve_snapshot_id("aaaa1") == a["id"]
    assert store.resolve_snapshot_id(b["id"]) == b["id"]

    with pytest.raises(SnapshotValidationError, match="Multiple"):
        store.resolve_snapshot_id("aaaa")
    with pytest.raises(SnapshotValidationError, match="too short"):
        store.resolve_snapshot_id("aaa")
    with pytest.raises(SnapshotValidationError, match="No snapshot"):
        store.resolve_snapshot_id("bbbb")


def test_find_matching(store, make_snapshot):
    a = make_snapshot(id="abcd0000-0000-4000-8000-000000000001")
    b = make_snapshot(id="ffff0000-0000-4000-8000-000000000002")
    store.save_snapshot(a)
    store.save_snapshot(b)

    assert store.find_matching("abcd*") == [a["id"]]
    with pytest.raises(SnapshotValidationError):
        store.find_matching("../*")


def test_startup_recovers_orphans(kodama_config, storage_paths):
    orphan = storage_paths.snapshots / f"x.json.tmp.{uuid.uuid4().hex}"
    orphan.write_text("partial")
    _age_file(orphan, 1)

    SnapshotStore(kodama_config, storage_paths)

    assert not orphan.exists()


def test_session_pointer(store):
    assert store.load_session_id() is None
    store.save_session_id("session-123\n")
    assert store.load_session_id() == "session-123"


@pytest.mark.parametrize(
    "make_id",
    [
        lambda u: "{" + str(u) + "}",
        lambda u: u.urn,
        lambda u: u.hex,
        lambda u: str(u).upper(),
    ],
)
def test_non_canonical_ids_rejected(store, make_snapshot, make_id):
    data = make_snapshot(id=make_id(uuid.uuid4()))

    with pytest.raises(SnapshotValidationError):
        store.save_snapshot(data)

    assert list(store.paths.snapshots.glob("*.json")) == []
