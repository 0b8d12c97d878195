"""Session guardian: health checks and automatic protection.

Two signals drive everything here: the remaining context budget reported by
the transcript analyzer (absent when unavailable) and the age of the most
recent snapshot (absent when none exists). The level, the suggested action
and the suggestion text are pure functions of those two values.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import GuardianConfig, KodamaConfig
from .errors import KodamaError
from .models.health import AutoAction, HealthLevel, HealthStatus, LastSnapshotInfo, ProtectResult
from .models.snapshot import Snapshot
from .storage import SnapshotStore
from .transcript import TranscriptInfo, analyze_transcript, find_transcript_path

logger = logging.getLogger(__name__)

# Snapshot age limits (hours) used by the health table
NO_SIGNAL_MAX_AGE_HOURS = 3
HEALTHY_MAX_AGE_HOURS = 4
WARNING_MAX_AGE_HOURS = 2

HEALTHY_MIN_PERCENT = 30
WARNING_MIN_PERCENT = 10


def calculate_health_level(remaining_percent: Optional[float], age_hours: Optional[float]) -> HealthLevel:
    """Collapse the two signals into healthy / warning / danger."""
    if remaining_percent is None:
        if age_hours is None:
            return "warning"
        if age_hours > NO_SIGNAL_MAX_AGE_HOURS:
            return "warning"
        return "healthy"

    if remaining_percent < WARNING_MIN_PERCENT:
        return "danger"

    if remaining_percent < HEALTHY_MIN_PERCENT:
        # A stale or missing snapshot compounds the risk
        if age_hours is None or age_hours > WARNING_MAX_AGE_HOURS:
            return "danger"
        return "warning"

    if age_hours is not None and age_hours > HEALTHY_MAX_AGE_HOURS:
        return "warning"
    return "healthy"


def determine_auto_action(
    remaining_percent: Optional[float],
    age_hours: Optional[float],
    thresholds: GuardianConfig,
) -> Optional[AutoAction]:
    """Decide whether to snapshot, warn, or do nothing.

    Independent of the displayed level.
    """
    if remaining_percent is None:
        return None

    if remaining_percent <= thresholds.auto_snapshot_threshold:
        if age_hours is not None and age_hours < thresholds.fresh_snapshot_guard_hours:
            return None
        return "snapshot"

    if remaining_percent <= thresholds.warning_threshold:
        if age_hours is None or age_hours > thresholds.snapshot_interval_hours:
            return "warn"

    return None


def generate_suggestion(remaining_percent: Optional[float], age_hours: Optional[float]) -> str:
    """Human-readable advice for the current state."""
    if remaining_percent is None:
        if age_hours is None:
            return "No session info. Run 'kc snap' to create the first snapshot"
        if age_hours > NO_SIGNAL_MAX_AGE_HOURS:
            return f"Last snapshot {round(age_hours)}h ago. Consider 'kc snap'"
        return "Session healthy. Keep coding!"

    percent = round(remaining_percent)

    if remaining_percent < WARNING_MIN_PERCENT:
        return "Critical! Run 'kc snap' immediately to avoid context loss"

    if remaining_percent < HEALTHY_MIN_PERCENT:
        if age_hours is None or age_hours > 1:
            return f"{percent}% remaining. Run 'kc snap' soon"
        return f"{percent}% remaining. Recent snapshot exists"

    if age_hours is not None and age_hours > NO_SIGNAL_MAX_AGE_HOURS:
        return f"{percent}% remaining. Consider a snapshot ({round(age_hours)}h old)"

    return f"{percent}% remaining. All good!"


def snapshot_age_hours(snapshot: Snapshot, now: Optional[datetime] = None) -> float:
    created = snapshot.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - created).total_seconds() / 3600)


class Guardian:
    """Evaluates session health and creates protective snapshots."""

    def __init__(
        self,
        config: KodamaConfig,
        store: Optional[SnapshotStore] = None,
        transcript_reader: Optional[Callable[[], Optional[TranscriptInfo]]] = None,
        thresholds: Optional[GuardianConfig] = None,
    ):
        """Initialize the guardian.

        Args:
            config: Process configuration
            store: Snapshot store to read from and write auto-snapshots to
            transcript_reader: Returns the current TranscriptInfo or None;
                defaults to analyzing the transcript found on disk
            thresholds: Override the configured guardian thresholds
        """
        self.config = config
        self.store = store or SnapshotStore(config)
        self.thresholds = thresholds or config.guardian
        self._read_transcript = transcript_reader or self._default_transcript_reader

    def _default_transcript_reader(self) -> Optional[TranscriptInfo]:
        path = find_transcript_path(self.config.home, self.config.transcript_path)
        return analyze_transcript(path)

    def check_health(self) -> HealthStatus:
        """Compute a fresh health report."""
        transcript = self._read_transcript()
        remaining = transcript.remaining_percent if transcript else None

        latest = self.store.get_latest_snapshot()
        last_snapshot = None
        age = None
        if latest is not None:
            age = snapshot_age_hours(latest)
            last_snapshot = LastSnapshotInfo(id=latest.id, title=latest.title, age_hours=age)

        return HealthStatus(
            level=calculate_health_level(remaining, age),
            remaining_percent=remaining,
            last_snapshot_age_hours=age,
            last_snapshot=last_snapshot,
            suggestion=generate_suggestion(remaining, age),
            auto_action=determine_auto_action(remaining, age, self.thresholds),
        )

    def create_auto_snapshot(self, remaining_percent: Optional[float]) -> Snapshot:
        """Persist a minimal snapshot marking the current usage."""
        usage = f"{100 - round(remaining_percent)}%" if remaining_percent is not None else "unknown"
        snapshot = Snapshot(
            id=str(uuid.uuid4()),
            title=f"Auto-save at {usage} usage",
            timestamp=datetime.now(timezone.utc).isoformat(),
            context="Automatic snapshot by kodama guardian",
            decisions=[],
            next_steps=[],
            cwd=os.getcwd(),
            claude_session_id=self.store.load_session_id(),
        )
        return self.store.save_snapshot(snapshot)

    def protect(self) -> ProtectResult:
        """Carry out the current auto-action.

        Write failures are reported in the result, never raised.
        """
        health = self.check_health()

        if health.auto_action == "snapshot":
            try:
                snapshot = self.create_auto_snapshot(health.remaining_percent)
            except (KodamaError, OSError) as e:
                logger.debug(f"Failed to create auto snapshot: {e}")
                return ProtectResult(action="snapshot", success=False, message=f"Auto-snapshot failed: {e}")
            return ProtectResult(
                action="snapshot",
                snapshot_id=snapshot.id,
                success=True,
                message=f"Auto-snapshot created: {snapshot.id[:8]}",
            )

        if health.auto_action == "warn":
            return ProtectResult(action="warn", success=False, message=health.suggestion)

        return ProtectResult(action=None, success=False, message=health.suggestion)
