"""Pytest fixtures for kodama tests."""

import uuid
from datetime import datetime, timezone

import pytest

from kodama.config import KodamaConfig
from kodama.paths import StoragePaths
from kodama.storage import SnapshotStore
from kodama.trash import TrashManager


@pytest.fixture
def temp_root(tmp_path):
    """Create a temporary root standing in for $HOME.

    Args:
        tmp_path: pytest's built-in temporary directory fixture

    Returns:
        Path to temporary root
    """
    root = tmp_path / "home"
    root.mkdir()
    return root


@pytest.fixture
def kodama_config(temp_root):
    """Create KodamaConfig rooted in the temporary directory.

    Auto-archive is off so tests control when files move.
    """
    return KodamaConfig.for_data_root(temp_root, auto_archive=False)


@pytest.fixture
def storage_paths(kodama_config):
    """Create StoragePaths with every directory in place."""
    paths = StoragePaths.from_config(kodama_config)
    for directory in paths.get_all_directories():
        directory.mkdir(parents=True, exist_ok=True)
    return paths


@pytest.fixture
def store(kodama_config, storage_paths):
    return SnapshotStore(kodama_config, storage_paths)


@pytest.fixture
def trash(kodama_config, storage_paths):
    return TrashManager(kodama_config, storage_paths)


@pytest.fixture
def make_snapshot():
    """Factory for valid snapshot dicts in on-disk (camelCase) form."""

    def _make(title="Test snapshot", **fields):
        data = {
            "id": str(uuid.uuid4()),
            "title": title,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "step": "implementing",
            "context": "Working on something",
            "decisions": [],
            "nextSteps": [],
        }
        data.update(fields)
        return data

    return _make
