"""Pydantic models for event log entries."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

EventType = Literal[
    "snapshot_created",
    "snapshot_sent",
    "context_injected",
    "snapshot_archived",
    "snapshot_trashed",
    "snapshot_restored",
    "trash_purged",
    "error",
]


class EventLogEntry(BaseModel):
    """Append-only event log record.

    Written as JSONL to ``events.jsonl``.
    Never mutate or delete; only append.
    """

    timestamp: datetime = Field(description="Event timestamp (ISO8601 UTC)")
    event_type: EventType = Field(alias="eventType", description="Event type")
    snapshot_id: Optional[str] = Field(default=None, alias="snapshotId")
    metadata: Optional[dict] = Field(default=None, description="Event-specific data")

    model_config = {"frozen": True, "populate_by_name": True}

    def to_jsonl(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True) + "\n"
