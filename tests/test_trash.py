"""Tests for the trash lifecycle."""

import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from kodama.errors import RestoreConflictError, SnapshotValidationError, TrashItemNotFoundError
from kodama.events import read_events
from kodama.models.trash import TrashItem, TrashMetadata


def _save(store, make_snapshot, **fields):
    data = make_snapshot(**fields)
    store.save_snapshot(data)
    return data["id"], store.snapshot_path(data["id"])


def test_trash_and_restore_scenario(store, trash, make_snapshot):
    snapshot_id, path = _save(store, make_snapshot, title="Keep me")
    original_bytes = path.read_bytes()

    item = trash.move_to_trash(path, snapshot_id, "Keep me")

    assert not path.exists()
    assert item.original_id == snapshot_id
    assert item.size == len(original_bytes)
    assert item.trashed_at.endswith("Z")
    assert [i.original_id for i in trash.list_trash_items()] == [snapshot_id]
    assert store.load_snapshot(snapshot_id) is None

    restored = trash.restore_from_trash(snapshot_id[:8])

    assert restored.original_id == snapshot_id
    assert path.read_bytes() == original_bytes
    assert trash.list_trash_items() == []

    event_types = [e.event_type for e in read_events(store.paths.events_file)]
    assert event_types == ["snapshot_created", "snapshot_trashed", "snapshot_restored"]


def test_metadata_uses_camel_case(store, trash, make_snapshot):
    snapshot_id, path = _save(store, make_snapshot)
    trash.move_to_trash(path, snapshot_id, "Title")

    raw = json.loads(trash.metadata_file.read_text())

    assert raw["version"] == "1.0.0"
    entry = raw["items"][0]
    assert entry["originalId"] == snapshot_id
    assert set(entry) >= {"originalPath", "trashedPath", "trashedAt"}


def test_move_rejects_paths_outside_snapshots(store, trash, make_snapshot, tmp_path):
    snapshot_id, path = _save(store, make_snapshot)
    outside = tmp_path / f"{snapshot_id}.json"
    outside.write_text("{}")

    with pytest.raises(SnapshotValidationError):
        trash.move_to_trash(outside, snapshot_id)
    with pytest.raises(SnapshotValidationError):
        trash.move_to_trash(store.paths.snapshots / ".." / f"{snapshot_id}.json", snapshot_id)
    with pytest.raises(SnapshotValidationError):
        trash.move_to_trash(path, "../evil")
    with pytest.raises(SnapshotValidationError):
        trash.move_to_trash(path, str(uuid.uuid4()))

    assert path.exists()
    assert outside.exists()


def test_move_missing_file(store, trash):
    missing_id = str(uuid.uuid4())
    with pytest.raises(SnapshotValidationError, match="does not exist"):
        trash.move_to_trash(store.paths.snapshot_file(missing_id), missing_id)


def test_restore_never_overwrites(store, trash, make_snapshot):
    snapshot_id, path = _save(store, make_snapshot, title="trashed version")
    trash.move_to_trash(path, snapshot_id)
    path.write_text("newer content")

    with pytest.raises(RestoreConflictError) as excinfo:
        trash.restore_from_trash(snapshot_id)

    assert excinfo.value.exit_code == 2
    assert path.read_text() == "newer content"
    assert len(trash.list_trash_items()) == 1


def test_restore_requires_four_characters(trash):
    with pytest.raises(SnapshotValidationError, match="too short"):
        trash.restore_from_trash("abc")


def test_restore_not_found(trash):
    with pytest.raises(TrashItemNotFoundError):
        trash.restore_from_trash("deadbeef")


def test_restore_ambiguous_prefix(store, trash, make_snapshot):
    for suffix in ("1", "2"):
        snapshot_id, path = _save(store, make_snapshot, id=f"abcd000{suffix}-0000-4000-8000-000000000000")
        trash.move_to_trash(path, snapshot_id)

    with pytest.raises(SnapshotValidationError, match="Multiple"):
        trash.restore_from_trash("abcd")

    assert trash.restore_from_trash("abcd0001").original_id.startswith("abcd0001")


def test_index_entry_without_file_is_pruned(store, trash, make_snapshot):
    snapshot_id, path = _save(store, make_snapshot)
    item = trash.move_to_trash(path, snapshot_id)
    Path(item.trashed_path).unlink()

    assert trash.list_trash_items() == []
    assert trash.load_metadata().items == []


def test_restore_with_missing_file_prunes_entry(store, trash, make_snapshot):
    snapshot_id, path = _save(store, make_snapshot)
    item = trash.move_to_trash(path, snapshot_id)
    Path(item.trashed_path).unlink()

    with pytest.raises(TrashItemNotFoundError):
        trash.restore_from_trash(snapshot_id)
    assert trash.load_metadata().items == []


def test_unindexed_file_is_adopted(store, trash, make_snapshot):
    snapshot_id, path = _save(store, make_snapshot, title="Orphaned")
    stray = store.paths.trash / f"{snapshot_id}_2026-01-01T00-00-00-000Z.json"
    path.rename(stray)

    items = trash.list_trash_items()

    assert [i.original_id for i in items] == [snapshot_id]
    assert items[0].title == "Orphaned"
    assert len(trash.load_metadata().items) == 1

    trash.restore_from_trash(snapshot_id)
    assert path.exists()


def test_corrupt_metadata_starts_fresh(trash):
    trash.metadata_file.write_text("{corrupt")

    assert trash.list_trash_items() == []
    assert trash.load_metadata() == TrashMetadata()


def test_find_trash_item(store, trash, make_snapshot):
    snapshot_id, path = _save(store, make_snapshot)
    trash.move_to_trash(path, snapshot_id)

    assert len(trash.find_trash_item(snapshot_id[:4])) == 1
    assert trash.find_trash_item("../etc") == []


def test_trash_stats(store, trash, make_snapshot):
    assert trash.get_trash_stats().count == 0

    sizes = 0
    for title in ("one", "two"):
        snapshot_id, path = _save(store, make_snapshot, title=title)
        sizes += path.stat().st_size
        trash.move_to_trash(path, snapshot_id, title)

    stats = trash.get_trash_stats()
    assert stats.count == 2
    assert stats.total_size == sizes
    assert stats.oldest_trashed_at is not None


def _backdate(trash, days):
    """Rewrite every index entry as trashed ``days`` ago."""
    stamp = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat(timespec="milliseconds")
    metadata = trash.load_metadata()
    metadata.items = [item.model_copy(update={"trashed_at": stamp}) for item in metadata.items]
    trash.metadata_file.write_text(metadata.to_json())


def test_cleanup_old_items(store, trash, make_snapshot):
    old_id, old_path = _save(store, make_snapshot, title="old")
    trash.move_to_trash(old_path, old_id)
    _backdate(trash, 10)
    new_id, new_path = _save(store, make_snapshot, title="new")
    trash.move_to_trash(new_path, new_id)

    preview = trash.cleanup_old_items(7, dry_run=True)
    assert preview.succeeded == [old_id]
    assert len(trash.list_trash_items()) == 2

    result = trash.cleanup_old_items(7)

    assert result.succeeded == [old_id]
    assert [i.original_id for i in trash.list_trash_items()] == [new_id]
    assert read_events(store.paths.events_file)[-1].event_type == "trash_purged"


def test_empty_trash(store, trash, make_snapshot):
    for _ in range(3):
        snapshot_id, path = _save(store, make_snapshot)
        trash.move_to_trash(path, snapshot_id)

    result = trash.empty_trash()

    assert result.count == 3
    assert trash.list_trash_items() == []
    remaining = [p.name for p in store.paths.trash.iterdir() if p.name != "metadata.json"]
    assert remaining == []


def test_trash_item_alias_round_trip():
    item = TrashItem.model_validate(
        {
            "originalId": "abcd",
            "originalPath": "/x/abcd.json",
            "trashedPath": "/x/.trash/abcd_1.json",
            "trashedAt": "2026-01-01T00:00:00.000Z",
        }
    )
    assert item.trashed_at_dt.tzinfo is not None


def test_trash_many_and_restore_many(store, trash, make_snapshot):
    ids = [_save(store, make_snapshot, title=f"snap {i}")[0] for i in range(7)]

    trashed = trash.trash_many(ids + ["../evil"])

    assert sorted(trashed.succeeded) == sorted(ids)
    assert [item_id for item_id, _ in trashed.failed] == ["../evil"]
    assert {item.title for item in trash.list_trash_items()} == {f"snap {i}" for i in range(7)}

    restored = trash.restore_many([i[:8] for i in ids[:3]] + ["deadbeef"])

    assert sorted(restored.succeeded) == sorted(ids[:3])
    assert restored.not_found == ["deadbeef"]
    assert len(trash.list_trash_items()) == 4


def test_malformed_trashed_at_entry_is_dropped_and_file_adopted(store, trash, make_snapshot):
    for title in ("one", "two"):
        snapshot_id, path = _save(store, make_snapshot, title=title)
        trash.move_to_trash(path, snapshot_id, title)
    raw = json.loads(trash.metadata_file.read_text())
    raw["items"][0]["trashedAt"] = "not-a-date"
    trash.metadata_file.write_text(json.dumps(raw))

    items = trash.list_trash_items()

    assert {item.title for item in items} == {"one", "two"}
    assert all(item.trashed_at != "not-a-date" for item in items)
    assert trash.get_trash_stats().count == 2
    assert trash.cleanup_old_items(7).count == 0
    assert trash.empty_trash().count == 2
    assert trash.list_trash_items() == []


def test_trash_item_rejects_malformed_timestamp():
    with pytest.raises(ValidationError):
        TrashItem.model_validate(
            {
                "originalId": "abcd",
                "originalPath": "/x/abcd.json",
                "trashedPath": "/x/.trash/abcd_1.json",
                "trashedAt": "not-a-date",
            }
        )
