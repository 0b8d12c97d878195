"""Snapshot store: validated, crash-safe snapshot persistence.

Layout under the data root::

    snapshots/<id>.json           live snapshots
    snapshots/archive/<id>.json   archived snapshots, byte-identical relocations
    events.jsonl                  append-only event log
    .session                      active assistant session id

Archiving only relocates files. Deleting snapshot content is the job of
``TrashManager``.
"""

import fnmatch
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from pydantic import ValidationError

from .atomic import cleanup_orphans, relocate_file, write_atomic
from .batch import BatchResult
from .config import KodamaConfig
from .errors import KodamaError, SnapshotLoadError, SnapshotValidationError
from .events import EventLog
from .models.event import EventType
from .models.snapshot import Snapshot
from .paths import StoragePaths
from .validation import MIN_PREFIX_LENGTH, ensure_safe_id

logger = logging.getLogger(__name__)

# Files above this size are treated as corrupt rather than read into memory
MAX_SNAPSHOT_BYTES = 1024 * 1024


def _sort_key(snapshot: Snapshot) -> datetime:
    ts = snapshot.created_at
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_validation_error(error: ValidationError) -> str:
    """One-line summary of a pydantic validation error."""
    parts = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item.get("loc", ())) or "snapshot"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)


class SnapshotStore:
    """CRUD, listing and archival for snapshot files."""

    def __init__(
        self,
        config: KodamaConfig,
        paths: Optional[StoragePaths] = None,
        recover: bool = True,
    ):
        """Initialize the store and recover from any interrupted writes.

        Args:
            config: Process configuration
            paths: Storage layout (derived from config if omitted)
            recover: Sweep orphaned temp and lock files on startup
        """
        self.config = config
        self.paths = paths or StoragePaths.from_config(config)
        self.events = EventLog(self.paths.events_file, debug=config.debug)
        self._ensure_directories()
        if recover:
            self.recover_from_crash()

    def _ensure_directories(self) -> None:
        for directory in (self.paths.data, self.paths.snapshots):
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)

    def recover_from_crash(self) -> int:
        """Delete leftovers of writes that were killed mid-way.

        Returns:
            Number of orphaned temp/lock files removed
        """
        cleaned = 0
        for directory in (self.paths.data, self.paths.snapshots, self.paths.archive, self.paths.trash):
            cleaned += cleanup_orphans(directory)
        if cleaned:
            logger.debug(f"Recovered {cleaned} orphaned file(s) from interrupted writes")
        return cleaned

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def snapshot_path(self, snapshot_id: str) -> Path:
        return self.paths.snapshot_file(ensure_safe_id(snapshot_id))

    def iter_snapshot_files(self, include_archived: bool = False) -> Iterator[Path]:
        """Yield snapshot files; live ones first, then archived ones if asked."""
        directories = [self.paths.snapshots]
        if include_archived:
            directories.append(self.paths.archive)
        for directory in directories:
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                if entry.is_file() and entry.suffix == ".json":
                    yield entry

    def live_snapshot_ids(self) -> list[str]:
        return [path.stem for path in self.iter_snapshot_files()]

    def _read_snapshot_file(self, path: Path) -> Snapshot:
        """Read and validate one snapshot file.

        Raises:
            SnapshotLoadError: If the file is oversized, not JSON, or invalid
        """
        name = path.name
        try:
            size = path.stat().st_size
            if size > MAX_SNAPSHOT_BYTES:
                raise SnapshotLoadError(f"Snapshot {name} exceeds {MAX_SNAPSHOT_BYTES} bytes")
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SnapshotLoadError(f"Failed to load snapshot {name}: {e}") from e

        try:
            return Snapshot.model_validate(data)
        except ValidationError as e:
            raise SnapshotLoadError(
                f"Snapshot {name} failed validation: {format_validation_error(e)}"
            ) from e

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def validate(self, snapshot: Union[Snapshot, dict[str, Any]]) -> Snapshot:
        """Run the schema check shared by every write path.

        Raises:
            SnapshotValidationError: If the record is malformed
        """
        if isinstance(snapshot, Snapshot):
            snapshot = snapshot.model_dump(by_alias=True)
        try:
            return Snapshot.model_validate(snapshot)
        except ValidationError as e:
            raise SnapshotValidationError(f"Invalid snapshot: {format_validation_error(e)}") from e

    def save_snapshot(self, snapshot: Union[Snapshot, dict[str, Any]]) -> Snapshot:
        """Validate, write atomically, and log a creation event.

        Nothing is written when validation fails.

        Returns:
            The validated snapshot as stored
        """
        validated = self.validate(snapshot)
        path = self.paths.snapshot_file(validated.id)

        write_atomic(path, validated.to_json(), debug=self.config.debug)
        logger.debug(f"Saved snapshot {validated.id}")

        self._record_event("snapshot_created", validated.id)
        return validated

    def load_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        """Load a snapshot by exact id.

        Looks in the live directory first, then in the archive.

        Returns:
            The snapshot, or None if no file exists for the id

        Raises:
            SnapshotValidationError: If the id contains traversal characters
            SnapshotLoadError: If the file exists but cannot be read
        """
        ensure_safe_id(snapshot_id)

        for path in (
            self.paths.snapshot_file(snapshot_id),
            self.paths.archived_snapshot_file(snapshot_id),
        ):
            if path.exists():
                return self._read_snapshot_file(path)
        return None

    def get_latest_snapshot(self) -> Optional[Snapshot]:
        """Most recently modified live snapshot, with the display decision cap.

        Unreadable files are skipped.
        """
        candidates = []
        for path in self.iter_snapshot_files():
            try:
                candidates.append((path.stat().st_mtime, path))
            except OSError:
                continue
        candidates.sort(key=lambda item: item[0], reverse=True)

        for _, path in candidates:
            try:
                snapshot = self._read_snapshot_file(path)
            except SnapshotLoadError as e:
                logger.debug(f"Skipping unreadable snapshot: {e}")
                continue
            return snapshot.with_decision_cap(self.config.effective_max_decisions)
        return None

    def list_snapshots(self, include_archived: bool = False) -> list[Snapshot]:
        """All parseable snapshots, newest timestamp first."""
        snapshots: list[Snapshot] = []
        for path in self.iter_snapshot_files(include_archived=include_archived):
            try:
                snapshots.append(self._read_snapshot_file(path))
            except SnapshotLoadError as e:
                logger.debug(f"Skipping unreadable snapshot: {e}")

        snapshots.sort(key=_sort_key, reverse=True)
        return snapshots

    def resolve_snapshot_id(self, id_or_prefix: str) -> str:
        """Resolve an exact id or an unambiguous prefix among live snapshots.

        Raises:
            SnapshotValidationError: If the input is unsafe, matches nothing,
                or matches more than one snapshot
        """
        ensure_safe_id(id_or_prefix, min_length=MIN_PREFIX_LENGTH)
        ids = self.live_snapshot_ids()
        if id_or_prefix in ids:
            return id_or_prefix

        matches = [snapshot_id for snapshot_id in ids if snapshot_id.startswith(id_or_prefix)]
        if not matches:
            raise SnapshotValidationError(f"No snapshot found matching ID: {id_or_prefix}")
        if len(matches) > 1:
            raise SnapshotValidationError(
                f"Multiple snapshots match ID '{id_or_prefix}': {', '.join(matches)}"
            )
        return matches[0]

    def find_older_than(self, max_age_days: float) -> list[str]:
        """Ids of live snapshots whose file mtime is older than ``max_age_days``."""
        cutoff = time.time() - max_age_days * 86400
        found = []
        for path in self.iter_snapshot_files():
            try:
                if path.stat().st_mtime < cutoff:
                    found.append(path.stem)
            except OSError:
                continue
        return found

    def find_matching(self, pattern: str) -> list[str]:
        """Ids of live snapshots matching a shell-style pattern (``*``, ``?``)."""
        if not pattern or ".." in pattern or "/" in pattern or "\\" in pattern or len(pattern) > 100:
            raise SnapshotValidationError(f"Invalid pattern: {pattern}")
        return [snapshot_id for snapshot_id in self.live_snapshot_ids() if fnmatch.fnmatchcase(snapshot_id, pattern)]

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def archive_old_snapshots(self, max_age_days: Optional[float] = None, dry_run: bool = False) -> BatchResult:
        """Relocate live snapshots older than ``max_age_days`` into archive/.

        Content is never modified. Per-file failures are logged and skipped.

        Args:
            max_age_days: Age threshold (defaults to the configured value)
            dry_run: Report what would move without moving anything

        Returns:
            BatchResult; ``count`` is the number of files moved
        """
        if max_age_days is None:
            max_age_days = self.config.archive_threshold_days

        result = BatchResult()
        for snapshot_id in self.find_older_than(max_age_days):
            if dry_run:
                result.succeeded.append(snapshot_id)
                continue
            try:
                relocate_file(
                    self.paths.snapshot_file(snapshot_id),
                    self.paths.archived_snapshot_file(snapshot_id),
                    debug=self.config.debug,
                )
            except (KodamaError, OSError) as e:
                logger.debug(f"Could not archive {snapshot_id}: {e}")
                result.failed.append((snapshot_id, str(e)))
                continue
            result.succeeded.append(snapshot_id)

        if result.succeeded and not dry_run:
            self._record_event("snapshot_archived", metadata={"count": result.count, "ids": result.succeeded})
        return result

    def trigger_auto_archive(self) -> Optional[BatchResult]:
        """Archive old snapshots unless auto-archive is disabled."""
        if not self.config.auto_archive:
            return None
        return self.archive_old_snapshots(self.config.archive_threshold_days)

    # ------------------------------------------------------------------
    # Events and session pointer
    # ------------------------------------------------------------------

    def append_event(
        self,
        event_type: EventType,
        snapshot_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ):
        """Append an event; errors propagate to the caller."""
        return self.events.append_event(event_type, snapshot_id=snapshot_id, metadata=metadata)

    def _record_event(
        self,
        event_type: EventType,
        snapshot_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        # The snapshot operation already succeeded; a failed audit append is reported, not raised
        try:
            self.append_event(event_type, snapshot_id=snapshot_id, metadata=metadata)
        except KodamaError as e:
            logger.warning(f"Could not append {event_type} event: {e}")

    def save_session_id(self, session_id: str) -> None:
        """Overwrite the session pointer."""
        write_atomic(self.paths.session_file, session_id.strip() + "\n", debug=self.config.debug)

    def load_session_id(self) -> Optional[str]:
        """Best-effort read of the session pointer."""
        try:
            value = self.paths.session_file.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return value or None
