"""End-to-end tests for the kc CLI.

The app is invoked in-process with ``typer.testing.CliRunner``; every test
gets its own HOME and XDG roots under tmp_path.
"""

import json
import os
import time

import pytest
from typer.testing import CliRunner

from kodama import __version__
from kodama.cli import app


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_env(tmp_path):
    return {
        "HOME": str(tmp_path),
        "XDG_DATA_HOME": str(tmp_path / "data"),
        "XDG_CONFIG_HOME": str(tmp_path / "config"),
        "KODAMA_AUTO_ARCHIVE": "false",
        "KODAMA_DEBUG": None,
        "KODAMA_NO_LIMIT": None,
        "CLAUDE_TRANSCRIPT_PATH": str(tmp_path / "no-transcript.jsonl"),
    }


@pytest.fixture
def kc(runner, cli_env):
    def _invoke(*args, input=None):
        return runner.invoke(app, list(args), env=cli_env, input=input)

    return _invoke


def _snap(kc, title, *extra):
    result = kc("snap", "--title", title, "--no-git", "--json", *extra)
    assert result.exit_code == 0, result.output
    return json.loads(result.output)["id"]


def test_version(kc):
    result = kc("version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_missing_home_exits_with_config_code(runner):
    result = runner.invoke(
        app,
        ["version"],
        env={"HOME": None, "XDG_DATA_HOME": None, "XDG_CONFIG_HOME": None},
    )

    assert result.exit_code == 78


def test_snap_list_show(kc, tmp_path):
    snapshot_id = _snap(kc, "Build login", "--step", "impl", "-d", "Use JWT", "-n", "Add tests", "--tags", "auth")

    stored = json.loads((tmp_path / "data" / "kodama-claude" / "snapshots" / f"{snapshot_id}.json").read_text())
    assert stored["step"] == "implementing"
    assert stored["decisions"] == ["Use JWT"]
    assert stored["nextSteps"] == ["Add tests"]
    assert "auth" in stored["tags"]

    listed = kc("list", "--json")
    assert listed.exit_code == 0
    assert [s["id"] for s in json.loads(listed.output)] == [snapshot_id]

    shown = kc("show", snapshot_id[:8], "--json")
    assert shown.exit_code == 0
    assert json.loads(shown.output)["title"] == "Build login"


def test_show_latest_caps_decisions(kc):
    decisions = []
    for index in range(8):
        decisions += ["-d", f"decision {index}"]
    _snap(kc, "Many decisions", *decisions)

    result = kc("show", "--json")

    assert result.exit_code == 0
    assert json.loads(result.output)["decisions"] == [f"decision {i}" for i in range(3, 8)]


def test_snap_rejects_unknown_step(kc):
    result = kc("snap", "--title", "x", "--step", "shipping", "--no-git")
    assert result.exit_code == 2


def test_show_traversal_rejected(kc):
    result = kc("show", "../../etc/passwd")
    assert result.exit_code == 2


def test_delete_and_restore(kc, tmp_path):
    snapshot_id = _snap(kc, "Disposable")
    live = tmp_path / "data" / "kodama-claude" / "snapshots" / f"{snapshot_id}.json"

    deleted = kc("delete", snapshot_id[:8], "--force")
    assert deleted.exit_code == 0, deleted.output
    assert not live.exists()

    listed = kc("trash", "list", "--json")
    assert [item["originalId"] for item in json.loads(listed.output)] == [snapshot_id]

    restored = kc("restore", snapshot_id[:8], "--json")
    assert restored.exit_code == 0, restored.output
    assert json.loads(restored.output)["succeeded"] == [snapshot_id]
    assert live.exists()


def test_delete_confirmation_declined(kc, tmp_path):
    snapshot_id = _snap(kc, "Keep")

    result = kc("delete", snapshot_id, input="n\n")

    assert result.exit_code == 1
    assert (tmp_path / "data" / "kodama-claude" / "snapshots" / f"{snapshot_id}.json").exists()


def test_delete_dry_run(kc, tmp_path):
    snapshot_id = _snap(kc, "Preview")

    result = kc("delete", snapshot_id, "--dry-run")

    assert result.exit_code == 0
    assert "Would move 1 snapshot" in result.output
    assert (tmp_path / "data" / "kodama-claude" / "snapshots" / f"{snapshot_id}.json").exists()


def test_delete_older_than(kc, tmp_path):
    old_id = _snap(kc, "Old")
    new_id = _snap(kc, "New")
    snapshots = tmp_path / "data" / "kodama-claude" / "snapshots"
    past = time.time() - 40 * 86400
    os.utime(snapshots / f"{old_id}.json", (past, past))

    result = kc("delete", "--older-than", "30 days", "--force", "--json")

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["succeeded"] == [old_id]
    assert (snapshots / f"{new_id}.json").exists()


def test_delete_without_targets(kc):
    assert kc("delete").exit_code == 2


def test_restore_not_found(kc):
    result = kc("restore", "deadbeef", "--json")

    assert result.exit_code == 1
    assert json.loads(result.output)["not_found"] == ["deadbeef"]


def test_trash_empty_and_stats(kc):
    snapshot_id = _snap(kc, "Gone")
    kc("delete", snapshot_id, "--force")

    stats = kc("trash", "stats")
    assert "Items:      1" in stats.output

    emptied = kc("trash", "empty", "--force")
    assert emptied.exit_code == 0
    assert "Trash is empty" in kc("trash", "list").output


def test_archive_command(kc, tmp_path):
    snapshot_id = _snap(kc, "Ancient")
    path = tmp_path / "data" / "kodama-claude" / "snapshots" / f"{snapshot_id}.json"
    past = time.time() - 60 * 86400
    os.utime(path, (past, past))

    result = kc("archive", "--days", "30")

    assert result.exit_code == 0
    assert not path.exists()
    assert (path.parent / "archive" / f"{snapshot_id}.json").exists()


def test_status_json(kc):
    result = kc("status", "--json")

    assert result.exit_code == 0
    health = json.loads(result.output)
    assert health["level"] == "warning"
    assert health["remaining_percent"] is None


def test_events_tail(kc):
    _snap(kc, "Logged")

    result = kc("events", "tail")

    assert result.exit_code == 0
    assert "snapshot_created" in result.output


def test_session_set_and_show(kc):
    assert kc("session", "set", "abc-123").exit_code == 0

    result = kc("session", "show")
    assert result.exit_code == 0
    assert "abc-123" in result.output


def test_doctor(kc):
    result = kc("doctor")

    assert result.exit_code == 0
    assert "Configuration" in result.output


def test_trash_cleanup_asks_before_purging(kc):
    snapshot_id = _snap(kc, "Expired")
    kc("delete", snapshot_id, "--force")

    declined = kc("trash", "cleanup", "--days", "0", input="n\n")

    assert declined.exit_code == 1
    assert "Cancelled" in declined.output
    listed = kc("trash", "list", "--json")
    assert [item["originalId"] for item in json.loads(listed.output)] == [snapshot_id]

    forced = kc("trash", "cleanup", "--days", "0", "--force")

    assert forced.exit_code == 0, forced.output
    assert "Trash is empty" in kc("trash", "list").output


def test_snap_advance_uses_next_step(kc):
    first = kc("snap", "--title", "First", "--no-git", "--advance", "--json")
    assert first.exit_code == 0, first.output
    assert json.loads(first.output)["step"] == "requirements"

    _snap(kc, "Design", "--step", "designing")
    advanced = kc("snap", "--title", "Build", "--no-git", "--advance", "--json")

    assert advanced.exit_code == 0, advanced.output
    assert json.loads(advanced.output)["step"] == "implementing"
