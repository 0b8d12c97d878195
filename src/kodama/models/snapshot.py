"""Pydantic model for snapshots.

This model is the single schema check for snapshot files: every save and
every load goes through ``Snapshot.model_validate``. Field names on disk are
camelCase.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..tags import normalize_tags
from ..validation import Step

SNAPSHOT_SCHEMA_VERSION = "1.0.0"


class Snapshot(BaseModel):
    """A persisted unit of development context.

    Written as JSON to ``snapshots/<id>.json``.
    """

    version: str = Field(default=SNAPSHOT_SCHEMA_VERSION, description="Schema version")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Snapshot UUID")
    title: str = Field(min_length=1, description="Display title")
    timestamp: str = Field(description="Creation time (ISO8601)")
    step: Optional[Step] = Field(default=None, description="Workflow phase")
    context: str = Field(default="", description="Free-text notes")
    decisions: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list, alias="nextSteps")
    tags: list[str] = Field(default_factory=list)
    claude_session_id: Optional[str] = Field(default=None, alias="claudeSessionId")
    cwd: Optional[str] = Field(default=None)
    git_branch: Optional[str] = Field(default=None, alias="gitBranch")
    git_commit: Optional[str] = Field(default=None, alias="gitCommit")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if value != SNAPSHOT_SCHEMA_VERSION:
            raise ValueError(f"unsupported snapshot version {value!r}")
        return value

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        try:
            canonical = str(uuid.UUID(value))
        except ValueError:
            raise ValueError("id must be a UUID") from None
        # File names are derived from the id, so only the hyphenated lowercase form is accepted
        if canonical != value:
            raise ValueError(f"id must be a canonical UUID, e.g. {canonical}")
        return value

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value

    @field_validator("timestamp")
    @classmethod
    def _check_timestamp(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value)
        except ValueError:
            raise ValueError("timestamp must be ISO8601") from None
        return value

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return normalize_tags(value)

    @property
    def created_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)

    def to_json(self) -> str:
        """Canonical on-disk serialization."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    def with_decision_cap(self, max_decisions: Optional[int]) -> "Snapshot":
        """Copy keeping only the most recent ``max_decisions`` decisions.

        Display-time only; the stored file is never rewritten with the cap.
        """
        if max_decisions is None or len(self.decisions) <= max_decisions:
            return self
        return self.model_copy(update={"decisions": self.decisions[-max_decisions:]})
