"""
Outbox Models

A task is a pending instruction to mirror one batch or one resource into
the document database. Tasks live until delivery is confirmed or has
terminally failed, then they are deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..timeutil import from_db_time


class OutboxKind(str, Enum):
    """Closed set of delivery instructions."""
    CREATE_BATCH_DOCUMENT = "push_batch"
    CREATE_RESOURCE_DOCUMENT = "push_resource"


class OutboxTask(BaseModel):
    """A row of the outbox table."""

    id: int
    user_id: int
    kind: OutboxKind
    ref_id: int
    attempt: int = 0
    due_at: datetime
    created_at: datetime
    claimed_until: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxTask":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            kind=OutboxKind(row["kind"]),
            ref_id=row["ref_id"],
            attempt=row["attempt"],
            due_at=from_db_time(row["due_at"]),
            created_at=from_db_time(row["created_at"]),
            claimed_until=from_db_time(row.get("claimed_until")),
            last_error=row.get("last_error"),
        )
