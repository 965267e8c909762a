"""
Batch Models

Users own batches; batches group resources (one chat message each).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from ..timeutil import from_db_time


class BatchState(str, Enum):
    """Valid batch states."""
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ResourceKind(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"


class Batch(BaseModel):
    """A group of resources with a single lifecycle."""

    id: int
    user_id: int
    state: BatchState
    title: Optional[str] = None
    external_id: Optional[str] = None
    created_at: datetime
    committed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    @property
    def has_title(self) -> bool:
        return bool(self.title and self.title.strip())

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Batch":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            state=BatchState(row["state"]),
            title=row.get("title"),
            external_id=row.get("external_id"),
            created_at=from_db_time(row["created_at"]),
            committed_at=from_db_time(row.get("committed_at")),
            rolled_back_at=from_db_time(row.get("rolled_back_at")),
        )


class Resource(BaseModel):
    """A single captured message (text or local media)."""

    id: int
    user_id: int
    batch_id: Optional[int] = None
    kind: ResourceKind
    content: str
    source_message_id: int
    sequence: int
    text: Optional[str] = None
    media_name: Optional[str] = None
    media_url: Optional[str] = None
    external_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Resource":
        return cls(
            **{
                **row,
                "kind": ResourceKind(row["kind"]),
                "created_at": from_db_time(row["created_at"]),
            }
        )


class ResourcePayload(BaseModel):
    """Input for attaching a resource, as produced by ingestion."""

    kind: ResourceKind
    content: str = Field(..., min_length=1)
    source_message_id: int
    text: Optional[str] = None
    media_name: Optional[str] = None
    media_url: Optional[str] = None

    @field_validator("content")
    @classmethod
    def check_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value
