"""Pydantic models for guardian health reports."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

HealthLevel = Literal["healthy", "warning", "danger"]
AutoAction = Literal["snapshot", "warn"]


class LastSnapshotInfo(BaseModel):
    id: str
    title: str
    age_hours: float


class HealthStatus(BaseModel):
    """Result of one health check. Computed fresh each time, never stored."""

    level: HealthLevel
    remaining_percent: Optional[int] = Field(default=None)
    last_snapshot_age_hours: Optional[float] = Field(default=None)
    last_snapshot: Optional[LastSnapshotInfo] = Field(default=None)
    suggestion: str
    auto_action: Optional[AutoAction] = Field(default=None)


class ProtectResult(BaseModel):
    """Outcome of ``Guardian.protect()``."""

    action: Optional[AutoAction] = None
    snapshot_id: Optional[str] = None
    success: bool = False
    message: str = ""
