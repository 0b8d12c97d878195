"""Configuration management for kodama.

The configuration is built once at process start by ``KodamaConfig.from_env()``
and handed to every component constructor. Nothing in the package reads the
environment on its own after that point.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

APP_DIR_NAME = "kodama-claude"


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    """Parse a positive int from the environment, falling back on bad input."""
    value = env.get(name)
    if not value:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _load_config_file_data(config_file: Path) -> Optional[dict]:
    """Load config.toml from the config root if it exists."""
    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        # A malformed config file must not block snapshots
        logger.debug(f"Ignoring unreadable config file {config_file}: {e}")
        return None


def _get_config_value(data: Optional[dict], keys: list[str]) -> Optional[float]:
    """Safely get a nested numeric config value."""
    if not data:
        return None
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    if isinstance(current, bool):
        return None
    if isinstance(current, (int, float)):
        return current
    return None


class GuardianConfig(BaseModel):
    """Thresholds for the session guardian (percent of context remaining)."""

    auto_snapshot_threshold: float = Field(default=10)
    warning_threshold: float = Field(default=30)
    snapshot_interval_hours: float = Field(default=1.0)
    # Skip an auto-snapshot when the latest one is younger than this (6 minutes)
    fresh_snapshot_guard_hours: float = Field(default=0.1)


class KodamaConfig(BaseModel):
    """Configuration for kodama storage, trash and guardian."""

    home: Optional[Path] = Field(default=None)
    xdg_data_home: Path
    xdg_config_home: Path

    debug: bool = Field(default=False)
    no_limit: bool = Field(default=False)
    auto_archive: bool = Field(default=True)
    archive_threshold_days: int = Field(default=30)
    max_decisions: int = Field(default=5)
    trash_retention_days: int = Field(default=7)
    transcript_path: Optional[Path] = Field(default=None)

    guardian: GuardianConfig = Field(default_factory=GuardianConfig)

    model_config = {"frozen": False}

    @property
    def data_dir(self) -> Path:
        return self.xdg_data_home / APP_DIR_NAME

    @property
    def config_dir(self) -> Path:
        return self.xdg_config_home / APP_DIR_NAME

    @property
    def effective_max_decisions(self) -> Optional[int]:
        """Display-time decision cap; None means unlimited."""
        if self.no_limit:
            return None
        return self.max_decisions

    @classmethod
    def for_data_root(cls, root: Path, **overrides) -> "KodamaConfig":
        """Build a config rooted at an explicit directory (tests, --data-dir)."""
        return cls(
            home=root,
            xdg_data_home=root / "data",
            xdg_config_home=root / "config",
            **overrides,
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "KodamaConfig":
        """Load configuration from environment variables and config.toml.

        Args:
            env: Mapping to read instead of ``os.environ``

        Raises:
            ConfigurationError: If HOME is unset and the XDG overrides do not
                cover both roots, or if HOME is not absolute
        """
        env = os.environ if env is None else env

        home_str = env.get("HOME")
        data_override = env.get("XDG_DATA_HOME")
        config_override = env.get("XDG_CONFIG_HOME")

        home: Optional[Path] = None
        if home_str:
            home = Path(home_str)
            if not home.is_absolute():
                raise ConfigurationError(f"HOME must be an absolute path, got: {home_str}")
        elif not (data_override and config_override):
            raise ConfigurationError(
                "HOME environment variable is not set "
                "(set HOME, or both XDG_DATA_HOME and XDG_CONFIG_HOME)"
            )

        xdg_data_home = Path(data_override) if data_override else home / ".local" / "share"
        xdg_config_home = Path(config_override) if config_override else home / ".config"

        file_data = _load_config_file_data(xdg_config_home / APP_DIR_NAME / "config.toml")

        guardian_values = {}
        for key in ("auto_snapshot_threshold", "warning_threshold", "snapshot_interval_hours"):
            value = _get_config_value(file_data, ["guardian", key])
            if value is not None:
                guardian_values[key] = value
        guardian = GuardianConfig(**guardian_values)

        file_retention = _get_config_value(file_data, ["trash", "retention_days"])
        retention_default = int(file_retention) if file_retention is not None and file_retention > 0 else 7

        transcript = env.get("CLAUDE_TRANSCRIPT_PATH")

        return cls(
            home=home,
            xdg_data_home=xdg_data_home,
            xdg_config_home=xdg_config_home,
            debug=_env_bool(env, "KODAMA_DEBUG", False),
            no_limit=_env_bool(env, "KODAMA_NO_LIMIT", False),
            auto_archive=env.get("KODAMA_AUTO_ARCHIVE", "").strip().lower() != "false",
            archive_threshold_days=_env_positive_int(env, "KODAMA_ARCHIVE_DAYS", 30),
            max_decisions=_env_positive_int(env, "KODAMA_MAX_DECISIONS", 5),
            trash_retention_days=_env_positive_int(env, "KODAMA_TRASH_RETENTION_DAYS", retention_default),
            transcript_path=Path(transcript) if transcript else None,
            guardian=guardian,
        )

    def summary(self) -> dict:
        """Effective configuration for debugging output."""
        return {
            "debug": self.debug,
            "no_limit": self.no_limit,
            "auto_archive": self.auto_archive,
            "archive_threshold_days": self.archive_threshold_days,
            "max_decisions": self.effective_max_decisions,
            "trash_retention_days": self.trash_retention_days,
            "data_dir": str(self.data_dir),
            "config_dir": str(self.config_dir),
            "transcript_path": str(self.transcript_path) if self.transcript_path else None,
            "guardian": self.guardian.model_dump(),
        }
