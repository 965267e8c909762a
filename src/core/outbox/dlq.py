"""
Dead Letter Queue (DLQ) Management

Keeps a record of outbox tasks that failed terminally (rejected payloads,
or retries exhausted when a cap is configured) so operators can inspect,
retry or purge them. The failing task itself is completed in the same
transaction, so the queue keeps moving.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from ..database.adapter import Connection, DatabaseAdapter, get_database
from ..errors import NotFoundError
from ..timeutil import from_db_time, to_db_time, utcnow
from .models import OutboxKind, OutboxTask
from .queue import OutboxQueue

logger = logging.getLogger(__name__)

_COLUMNS = "id, outbox_id, user_id, kind, ref_id, attempts, error, task_created_at, failed_at"


class DLQAction(str, Enum):
    """Operator actions on a dead letter."""
    RETRY = "retry"
    PURGE = "purge"


@dataclass
class DLQEntry:
    """An outbox task that will not be retried automatically."""
    id: int
    outbox_id: int
    user_id: int
    kind: str
    ref_id: int
    attempts: int
    error: Optional[str]
    task_created_at: datetime
    failed_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DLQEntry":
        return cls(
            id=row["id"],
            outbox_id=row["outbox_id"],
            user_id=row["user_id"],
            kind=row["kind"],
            ref_id=row["ref_id"],
            attempts=row["attempts"],
            error=row.get("error"),
            task_created_at=from_db_time(row["task_created_at"]),
            failed_at=from_db_time(row["failed_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "outbox_id": self.outbox_id,
            "user_id": self.user_id,
            "kind": self.kind,
            "ref_id": self.ref_id,
            "attempts": self.attempts,
            "error": self.error,
            "task_created_at": self.task_created_at.isoformat() if self.task_created_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None
        }


class DLQManager:
    """Records terminal delivery failures and the operator actions on them."""

    def __init__(self, db: Optional[DatabaseAdapter] = None, queue: Optional[OutboxQueue] = None):
        self._db = db
        self.queue = queue or OutboxQueue(db)

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def record(
        self,
        task: OutboxTask,
        error: str,
        conn: Connection,
        now: Optional[datetime] = None
    ) -> int:
        """
        Write a dead letter for `task`. Runs inside the completing transaction.

        Returns:
            The dead letter id
        """
        entry_id = await conn.insert(
            """
            INSERT INTO dead_letters (
                outbox_id, user_id, kind, ref_id, attempts, error, task_created_at, failed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            task.id,
            task.user_id,
            task.kind.value,
            task.ref_id,
            task.attempt + 1,
            (error or "")[:2000],
            to_db_time(task.created_at),
            to_db_time(now or utcnow()),
        )
        logger.error(
            f"Outbox task {task.id} ({task.kind.value} ref={task.ref_id}) dead-lettered "
            f"as {entry_id} after {task.attempt + 1} attempt(s): {error}"
        )
        return entry_id

    async def get_entry(self, entry_id: int) -> DLQEntry:
        db = await self._get_db()
        row = await db.fetchrow(f"SELECT {_COLUMNS} FROM dead_letters WHERE id = $1", entry_id)
        if not row:
            raise NotFoundError("Dead letter", entry_id)
        return DLQEntry.from_row(row)

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        user_id: Optional[int] = None
    ) -> List[DLQEntry]:
        """Newest failures first, optionally for one user."""
        db = await self._get_db()

        if user_id is not None:
            rows = await db.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM dead_letters
                WHERE user_id = $1
                ORDER BY failed_at DESC, id DESC
                LIMIT $2 OFFSET $3
                """,
                user_id, limit, offset
            )
        else:
            rows = await db.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM dead_letters
                ORDER BY failed_at DESC, id DESC
                LIMIT $1 OFFSET $2
                """,
                limit, offset
            )

        return [DLQEntry.from_row(row) for row in rows]

    async def get_count(self, user_id: Optional[int] = None) -> int:
        db = await self._get_db()

        if user_id is not None:
            count = await db.fetchval("SELECT COUNT(*) FROM dead_letters WHERE user_id = $1", user_id)
        else:
            count = await db.fetchval("SELECT COUNT(*) FROM dead_letters")

        return count or 0

    async def retry_entry(self, entry_id: int, operator_id: Optional[str] = None) -> int:
        """
        Re-enqueue a fresh task for the dead letter's reference and drop the entry.

        Args:
            entry_id: The dead letter id
            operator_id: ID of operator performing the action

        Returns:
            The new outbox task id

        Raises:
            NotFoundError: Unknown dead letter
        """
        db = await self._get_db()

        async with db.transaction() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM dead_letters WHERE id = $1", entry_id)
            if not row:
                raise NotFoundError("Dead letter", entry_id)

            task_id = await self.queue.enqueue(
                OutboxKind(row["kind"]), row["ref_id"], row["user_id"], conn=conn
            )
            await conn.execute("DELETE FROM dead_letters WHERE id = $1", entry_id)

        logger.info(f"DLQ entry {entry_id} re-enqueued as outbox task {task_id} by {operator_id}")
        self._log_action(entry_id, DLQAction.RETRY, operator_id)
        return task_id

    async def purge_entry(self, entry_id: int, operator_id: Optional[str] = None) -> bool:
        """Drop a dead letter without re-enqueueing; False when it did not exist."""
        db = await self._get_db()

        deleted = await db.execute("DELETE FROM dead_letters WHERE id = $1", entry_id)
        if deleted:
            self._log_action(entry_id, DLQAction.PURGE, operator_id)
        return deleted > 0

    async def purge_old(self, days: int = 30, operator_id: Optional[str] = None) -> int:
        """Purge DLQ entries that failed more than `days` days ago."""
        db = await self._get_db()
        cutoff = to_db_time(utcnow() - timedelta(days=days))

        count = await db.execute("DELETE FROM dead_letters WHERE failed_at < $1", cutoff)

        logger.info(f"DLQ purged {count} entries older than {days} days by {operator_id}")
        return count

    async def get_stats(self) -> Dict[str, Any]:
        """Totals per task kind and the oldest failure time."""
        db = await self._get_db()

        total = await db.fetchval("SELECT COUNT(*) FROM dead_letters")

        by_kind = await db.fetch(
            """
            SELECT kind, COUNT(*) AS count
            FROM dead_letters
            GROUP BY kind
            ORDER BY count DESC
            """
        )

        oldest = await db.fetchval("SELECT MIN(failed_at) FROM dead_letters")

        return {
            "total_count": total or 0,
            "by_kind": {row["kind"]: row["count"] for row in by_kind},
            "oldest_entry": from_db_time(oldest).isoformat() if oldest else None
        }

    def _log_action(self, entry_id: int, action: DLQAction, operator_id: Optional[str]):
        logger.info(f"DLQ action: {action.value} on {entry_id} by {operator_id}")
