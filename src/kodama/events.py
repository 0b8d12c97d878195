"""Append-only event log for kodama."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .atomic import update_atomic
from .models.event import EventLogEntry, EventType

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only event log writer.

    Writes events to <data>/events.jsonl.
    Never truncates or rewrites existing lines. Each append reads the current
    file, adds one line and atomically replaces the file, so a crash mid-append
    leaves either the old log or the old log plus the new line.
    """

    def __init__(self, events_path: Path, debug: bool = False):
        """Initialize event log.

        Args:
            events_path: Path to events.jsonl file
            debug: Include full paths in write errors
        """
        self.events_path = events_path
        self.debug = debug

    def append(self, entry: EventLogEntry) -> EventLogEntry:
        """Append a validated entry to the log."""
        line = entry.to_jsonl().encode("utf-8")

        def _append(existing: Optional[bytes]) -> bytes:
            existing = existing or b""
            if existing and not existing.endswith(b"\n"):
                existing += b"\n"
            return existing + line

        update_atomic(self.events_path, _append, debug=self.debug)
        return entry

    def append_event(
        self,
        event_type: EventType,
        snapshot_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> EventLogEntry:
        """Create and append an event stamped with the current UTC time."""
        entry = EventLogEntry(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            snapshot_id=snapshot_id,
            metadata=metadata,
        )
        return self.append(entry)


def read_events(events_path: Path, n: int = 20) -> list[EventLogEntry]:
    """Read the last N events from the log.

    Robust parsing: skips malformed lines with a warning.

    Args:
        events_path: Path to events.jsonl file
        n: Number of events to read from the end

    Returns:
        List of EventLogEntry objects (last N events, oldest first)
    """
    if not events_path.exists():
        return []

    with open(events_path, "r", encoding="utf-8") as f:
        lines = [line.strip() for line in f if line.strip()]

    events: list[EventLogEntry] = []
    malformed_count = 0

    for line in lines[-n:] if n > 0 else []:
        try:
            events.append(EventLogEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            malformed_count += 1
            logger.warning(f"Skipping malformed event line: {e}")

    if malformed_count > 0:
        logger.warning(f"Skipped {malformed_count} malformed event line(s)")

    return events
