"""Pydantic models for the trash metadata index."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

TRASH_METADATA_VERSION = "1.0.0"


class TrashItem(BaseModel):
    """One trashed snapshot file.

    Stored in ``.trash/metadata.json``; the snapshot content itself stays in
    the trashed file untouched.
    """

    original_id: str = Field(alias="originalId")
    original_path: str = Field(alias="originalPath")
    trashed_path: str = Field(alias="trashedPath")
    trashed_at: str = Field(alias="trashedAt", description="ISO8601 UTC")
    title: Optional[str] = Field(default=None)
    size: Optional[int] = Field(default=None)

    model_config = {"populate_by_name": True}

    @field_validator("trashed_at")
    @classmethod
    def _check_trashed_at(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value)
        except ValueError:
            raise ValueError("trashedAt must be ISO8601") from None
        return value

    @property
    def trashed_at_dt(self) -> datetime:
        return datetime.fromisoformat(self.trashed_at)


class TrashMetadata(BaseModel):
    """The whole trash index document."""

    version: str = Field(default=TRASH_METADATA_VERSION)
    items: list[TrashItem] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class TrashStats(BaseModel):
    """Aggregate trash figures, derived on demand."""

    count: int = 0
    total_size: int = 0
    oldest_trashed_at: Optional[str] = None
