"""Soft delete for snapshots: quarantine, restore, and retention purge.

A snapshot file moves ``Active -> Trashed`` by a rename into ``.trash/``
and back again on restore; ``Trashed -> Purged`` unlinks it for good. The
metadata index ``.trash/metadata.json`` is a separate small store. Every
listing reconciles it with the files actually present in the trash
directory, so the two never disagree for longer than one read.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .atomic import relocate_file, update_atomic
from .batch import BatchResult, run_batch_sync
from .config import KodamaConfig
from .errors import (
    KodamaError,
    RestoreConflictError,
    SnapshotValidationError,
    TrashItemNotFoundError,
)
from .events import EventLog
from .models.trash import TrashItem, TrashMetadata, TrashStats
from .paths import StoragePaths
from .storage import format_validation_error
from .validation import MIN_PREFIX_LENGTH, ensure_safe_id, is_safe_id

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200

_TRASH_FILE_RE = re.compile(r"^(?P<id>[A-Za-z0-9-]+)_(?P<stamp>[0-9TZ-]+?)(?:-\d+)?\.json$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _read_title(path: Path) -> Optional[str]:
    """Best-effort title from a snapshot file; None when unreadable."""
    try:
        title = json.loads(path.read_text(encoding="utf-8")).get("title")
    except (OSError, ValueError, AttributeError):
        return None
    return title[:MAX_TITLE_LENGTH] if isinstance(title, str) else None


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class TrashManager:
    """Soft-delete layer over the snapshots directory."""

    def __init__(self, config: KodamaConfig, paths: Optional[StoragePaths] = None):
        self.config = config
        self.paths = paths or StoragePaths.from_config(config)
        self.trash_dir = self.paths.trash
        self.metadata_file = self.paths.trash_metadata_file
        self.events = EventLog(self.paths.events_file, debug=config.debug)
        self.trash_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def _parse_metadata(self, raw: Optional[bytes]) -> TrashMetadata:
        if not raw:
            return TrashMetadata()
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Trash metadata unreadable, starting a new index: {e}")
            return TrashMetadata()
        if not isinstance(data, dict) or not isinstance(data.get("items", []), list):
            logger.warning("Trash metadata has an unexpected shape, starting a new index")
            return TrashMetadata()

        # A tampered entry is dropped on its own; its file is adopted again on the next listing
        items = []
        for entry in data.get("items", []):
            try:
                items.append(TrashItem.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Dropping invalid trash index entry: {format_validation_error(e)}")
        return TrashMetadata(items=items)

    def load_metadata(self) -> TrashMetadata:
        try:
            return self._parse_metadata(self.metadata_file.read_bytes())
        except FileNotFoundError:
            return TrashMetadata()

    def _update_metadata(self, mutate: Callable[[TrashMetadata], TrashMetadata]) -> TrashMetadata:
        """Apply ``mutate`` to the index under its lock and persist the result."""
        result: list[TrashMetadata] = []

        def _transform(raw: Optional[bytes]) -> str:
            updated = mutate(self._parse_metadata(raw))
            result.append(updated)
            return updated.to_json()

        update_atomic(self.metadata_file, _transform, debug=self.config.debug)
        return result[0]

    def _record_event(self, event_type, snapshot_id: Optional[str] = None, metadata: Optional[dict] = None) -> None:
        try:
            self.events.append_event(event_type, snapshot_id=snapshot_id, metadata=metadata)
        except KodamaError as e:
            logger.warning(f"Could not append {event_type} event: {e}")

    # ------------------------------------------------------------------
    # Active -> Trashed
    # ------------------------------------------------------------------

    def _trashed_path_for(self, snapshot_id: str, trashed_at: str) -> Path:
        stamp = trashed_at.replace(":", "-").replace(".", "-")
        candidate = self.trash_dir / f"{snapshot_id}_{stamp}.json"
        counter = 1
        while candidate.exists():
            candidate = self.trash_dir / f"{snapshot_id}_{stamp}-{counter}.json"
            counter += 1
        return candidate

    def move_to_trash(self, snapshot_path: Path, snapshot_id: str, title: Optional[str] = None) -> TrashItem:
        """Move a live snapshot file into the trash.

        Raises:
            SnapshotValidationError: If the path is outside the live snapshots
                directory, the id is unsafe, or the file does not exist
        """
        snapshot_path = Path(snapshot_path)
        if not is_safe_id(snapshot_id) or ".." in snapshot_path.parts:
            raise SnapshotValidationError("Invalid snapshot path or ID")
        if not self.paths.is_live_snapshot_path(snapshot_path):
            raise SnapshotValidationError("Invalid snapshot path or ID")
        if snapshot_path.name != f"{snapshot_id}.json":
            raise SnapshotValidationError("Invalid snapshot path or ID")
        if not snapshot_path.is_file():
            raise SnapshotValidationError(f"Snapshot file does not exist: {snapshot_id}")

        size = snapshot_path.stat().st_size
        trashed_at = _now_iso()
        trashed_path = self._trashed_path_for(snapshot_id, trashed_at)

        relocate_file(snapshot_path, trashed_path, debug=self.config.debug)

        item = TrashItem(
            original_id=snapshot_id,
            original_path=str(snapshot_path),
            trashed_path=str(trashed_path),
            trashed_at=trashed_at,
            title=title[:MAX_TITLE_LENGTH] if title else None,
            size=size,
        )

        def _add(metadata: TrashMetadata) -> TrashMetadata:
            # A concurrent listing may already have adopted the file
            metadata.items = [x for x in metadata.items if x.trashed_path != item.trashed_path]
            metadata.items.append(item)
            return metadata

        try:
            self._update_metadata(_add)
        except KodamaError:
            # Put the file back so it is not stranded without an index entry
            relocate_file(trashed_path, snapshot_path, debug=self.config.debug)
            raise

        logger.debug(f"Moved to trash: {snapshot_id} -> {trashed_path.name}")
        self._record_event("snapshot_trashed", snapshot_id)
        return item

    # ------------------------------------------------------------------
    # Trashed -> Active
    # ------------------------------------------------------------------

    def _match(self, items: list[TrashItem], id_or_prefix: str) -> list[TrashItem]:
        exact = [item for item in items if item.original_id == id_or_prefix]
        if exact:
            return exact
        return [item for item in items if item.original_id.startswith(id_or_prefix)]

    def restore_from_trash(self, id_or_prefix: str) -> TrashItem:
        """Move a trashed snapshot back to its original path.

        Raises:
            TrashItemNotFoundError: If nothing in the trash matches
            SnapshotValidationError: If the prefix is unsafe, too short, or
                ambiguous
            RestoreConflictError: If a file already occupies the original path
        """
        ensure_safe_id(id_or_prefix, min_length=MIN_PREFIX_LENGTH)

        matches = self._match(self.load_metadata().items, id_or_prefix)
        if not matches:
            raise TrashItemNotFoundError(f"Snapshot not found in trash: {id_or_prefix}")
        if len(matches) > 1:
            raise SnapshotValidationError(
                f"Multiple snapshots match '{id_or_prefix}': "
                + ", ".join(item.original_id for item in matches)
            )

        item = matches[0]
        trashed_path = Path(item.trashed_path)
        original_path = Path(item.original_path)

        if not self.paths.is_live_snapshot_path(original_path) or original_path.name != f"{item.original_id}.json":
            raise SnapshotValidationError(f"Trash entry for {item.original_id} has an invalid original path")

        if not trashed_path.exists():
            self._remove_entries({item.trashed_path})
            raise TrashItemNotFoundError(f"Trash file not found: {item.original_id}")

        if original_path.exists():
            raise RestoreConflictError(f"Cannot restore: target file already exists ({item.original_id})")

        try:
            relocate_file(trashed_path, original_path, debug=self.config.debug)
        except FileExistsError:
            raise RestoreConflictError(
                f"Cannot restore: target file already exists ({item.original_id})"
            ) from None
        except FileNotFoundError:
            # Another process restored or purged it first
            raise TrashItemNotFoundError(f"Trash file not found: {item.original_id}") from None

        self._remove_entries({item.trashed_path})
        logger.debug(f"Restored from trash: {item.original_id}")
        self._record_event("snapshot_restored", item.original_id)
        return item

    def _remove_entries(self, trashed_paths: set[str]) -> None:
        def _drop(metadata: TrashMetadata) -> TrashMetadata:
            metadata.items = [item for item in metadata.items if item.trashed_path not in trashed_paths]
            return metadata

        self._update_metadata(_drop)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def trash_many(self, snapshot_ids: list[str], titles: Optional[dict[str, Optional[str]]] = None) -> BatchResult:
        """Move several live snapshots to the trash, five at a time.

        Args:
            snapshot_ids: Exact live snapshot ids
            titles: Known titles by id; missing ones are read from the file
        """
        titles = titles or {}

        def _one(snapshot_id: str) -> str:
            path = self.paths.snapshot_file(ensure_safe_id(snapshot_id))
            title = titles.get(snapshot_id) or _read_title(path)
            self.move_to_trash(path, snapshot_id, title)
            return snapshot_id

        return run_batch_sync(list(snapshot_ids), _one)

    def restore_many(self, ids_or_prefixes: list[str]) -> BatchResult:
        """Restore several trashed snapshots, five at a time."""
        return run_batch_sync(
            list(ids_or_prefixes),
            lambda item_id: self.restore_from_trash(item_id).original_id,
        )

    # ------------------------------------------------------------------
    # Listing and reconciliation
    # ------------------------------------------------------------------

    def _unindexed_files(self, items: list[TrashItem]) -> list[Path]:
        indexed = {Path(item.trashed_path).name for item in items}
        found = []
        for entry in self.trash_dir.iterdir():
            if entry.name == self.metadata_file.name or entry.name in indexed:
                continue
            if entry.is_file() and _TRASH_FILE_RE.match(entry.name):
                found.append(entry)
        return found

    def _item_for_unindexed(self, path: Path) -> TrashItem:
        snapshot_id = _TRASH_FILE_RE.match(path.name).group("id")
        stat = path.stat()
        title = _read_title(path)
        return TrashItem(
            original_id=snapshot_id,
            original_path=str(self.paths.snapshot_file(snapshot_id)),
            trashed_path=str(path),
            trashed_at=datetime.fromtimestamp(stat.st_ctime, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            title=title,
            size=stat.st_size,
        )

    def list_trash_items(self) -> list[TrashItem]:
        """Trash entries backed by an existing file, newest first.

        Entries whose file has vanished are pruned from the index, and trash
        files the index does not know about are adopted into it.
        """
        metadata = self.load_metadata()
        valid = [item for item in metadata.items if Path(item.trashed_path).exists()]
        missing = {item.trashed_path for item in metadata.items} - {item.trashed_path for item in valid}
        adopted = [self._item_for_unindexed(path) for path in self._unindexed_files(metadata.items)]

        for trashed_path in missing:
            logger.debug(f"Trash file not found, dropping index entry: {Path(trashed_path).name}")
        for item in adopted:
            logger.debug(f"Adopting unindexed trash file: {Path(item.trashed_path).name}")

        if missing or adopted:
            def _reconcile(current: TrashMetadata) -> TrashMetadata:
                known = {item.trashed_path for item in current.items}
                current.items = [item for item in current.items if Path(item.trashed_path).exists()]
                current.items.extend(item for item in adopted if item.trashed_path not in known)
                return current

            metadata = self._update_metadata(_reconcile)
            valid = list(metadata.items)

        return sorted(valid, key=lambda item: _parse_ts(item.trashed_at), reverse=True)

    def find_trash_item(self, partial_id: str) -> list[TrashItem]:
        """Trash entries matching an exact id or id prefix; [] for unsafe input."""
        if not is_safe_id(partial_id):
            return []
        return self._match(self.list_trash_items(), partial_id)

    def get_trash_stats(self) -> TrashStats:
        items = self.list_trash_items()
        if not items:
            return TrashStats()
        oldest = min(items, key=lambda item: _parse_ts(item.trashed_at))
        return TrashStats(
            count=len(items),
            total_size=sum(item.size or 0 for item in items),
            oldest_trashed_at=oldest.trashed_at,
        )

    # ------------------------------------------------------------------
    # Trashed -> Purged
    # ------------------------------------------------------------------

    def _purge(self, items: list[TrashItem], dry_run: bool) -> BatchResult:
        result = BatchResult()
        if dry_run:
            result.succeeded.extend(item.original_id for item in items)
            return result

        removed: set[str] = set()
        for item in items:
            try:
                Path(item.trashed_path).unlink()
            except FileNotFoundError:
                removed.add(item.trashed_path)
                continue
            except OSError as e:
                logger.debug(f"Failed to delete trash item {item.original_id}: {e}")
                result.failed.append((item.original_id, str(e)))
                continue
            removed.add(item.trashed_path)
            result.succeeded.append(item.original_id)
            logger.debug(f"Permanently deleted: {item.original_id}")

        if removed:
            self._remove_entries(removed)
        if result.succeeded:
            self._record_event("trash_purged", metadata={"count": result.count, "ids": result.succeeded})
        return result

    def cleanup_old_items(self, retention_days: Optional[int] = None, dry_run: bool = False) -> BatchResult:
        """Permanently delete items trashed more than ``retention_days`` ago."""
        if retention_days is None:
            retention_days = self.config.trash_retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        expired = [item for item in self.list_trash_items() if _parse_ts(item.trashed_at) < cutoff]
        return self._purge(expired, dry_run)

    def empty_trash(self, dry_run: bool = False) -> BatchResult:
        """Permanently delete everything in the trash."""
        return self._purge(self.list_trash_items(), dry_run)
