"""Pydantic models for kodama."""

from .event import EventLogEntry, EventType
from .health import AutoAction, HealthLevel, HealthStatus, LastSnapshotInfo, ProtectResult
from .snapshot import SNAPSHOT_SCHEMA_VERSION, Snapshot
from .trash import TRASH_METADATA_VERSION, TrashItem, TrashMetadata, TrashStats

__all__ = [
    "Snapshot",
    "SNAPSHOT_SCHEMA_VERSION",
    # Events
    "EventLogEntry",
    "EventType",
    # Trash
    "TrashItem",
    "TrashMetadata",
    "TrashStats",
    "TRASH_METADATA_VERSION",
    # Guardian
    "AutoAction",
    "HealthLevel",
    "HealthStatus",
    "LastSnapshotInfo",
    "ProtectResult",
]
