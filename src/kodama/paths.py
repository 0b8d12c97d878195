"""Path management and storage layout for kodama."""

from pathlib import Path

from .config import KodamaConfig


class StoragePaths:
    """Manages paths within the kodama data directory."""

    def __init__(self, data_root: Path, config_root: Path):
        """Initialize storage paths from the resolved roots.

        Args:
            data_root: Root directory for snapshots, trash and logs
            config_root: Root directory for config.toml
        """
        self.data = data_root
        self.config = config_root

        # Snapshot directories
        self.snapshots = data_root / "snapshots"
        self.archive = self.snapshots / "archive"

        # Trash
        self.trash = data_root / ".trash"
        self.trash_metadata_file = self.trash / "metadata.json"

        # Data files
        self.events_file = data_root / "events.jsonl"
        self.session_file = data_root / ".session"

        # Config files
        self.config_file = config_root / "config.toml"

    @classmethod
    def from_config(cls, config: KodamaConfig) -> "StoragePaths":
        """Create StoragePaths from a KodamaConfig."""
        return cls(config.data_dir, config.config_dir)

    def get_all_directories(self) -> list[Path]:
        """Get list of all directories that should exist."""
        return [
            self.data,
            self.snapshots,
            self.archive,
            self.trash,
        ]

    def snapshot_file(self, snapshot_id: str) -> Path:
        """Path of a live snapshot file; the name is derived from the id."""
        return self.snapshots / f"{snapshot_id}.json"

    def archived_snapshot_file(self, snapshot_id: str) -> Path:
        """Path of an archived snapshot file."""
        return self.archive / f"{snapshot_id}.json"

    def is_live_snapshot_path(self, path: Path) -> bool:
        """True when ``path`` is a direct child of the live snapshots directory."""
        try:
            resolved = path.resolve()
        except OSError:
            return False
        return resolved.parent == self.snapshots.resolve()
