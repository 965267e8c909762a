"""
Outbox Queue

Durable delivery queue ordered by (due_at, id).

Enqueue runs inside the caller's transaction so a task exists if and only
if the state change that produced it was committed. Completion deletes the
task and advances the progress cursor in one transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..database.adapter import Connection, DatabaseAdapter, get_database
from ..timeutil import from_db_time, to_db_time, utcnow
from .cursor import ProgressCursor
from .models import OutboxKind, OutboxTask

logger = logging.getLogger(__name__)

DEFAULT_BASE_BACKOFF_SECONDS = 5
DEFAULT_MAX_BACKOFF_SECONDS = 60
DEFAULT_LEASE_SECONDS = 300

# 2**20 already exceeds any sane ceiling
_MAX_EXPONENT = 20

_TASK_COLUMNS = "id, user_id, kind, ref_id, attempt, due_at, created_at, claimed_until, last_error"


def compute_backoff(
    attempt: int,
    base_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
    max_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
) -> float:
    """
    Delay before the next try after `attempt` failures.

    base * 2**(attempt-1), capped at max_seconds. Non-decreasing in attempt.
    """
    if attempt < 1:
        return 0.0
    exponent = min(attempt - 1, _MAX_EXPONENT)
    return float(min(max_seconds, base_seconds * (2 ** exponent)))


class OutboxQueue:
    """
    Persistent outbox operations.

    Usage:
        queue = OutboxQueue(db)

        async with db.transaction() as conn:
            ...  # business writes
            await queue.enqueue(OutboxKind.CREATE_BATCH_DOCUMENT, batch_id, user_id, conn=conn)

        task = await queue.fetch_next_due()
        ...
        await queue.complete(task)
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ):
        self._db = db
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.lease_seconds = lease_seconds
        self.cursor = ProgressCursor(db)

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
            self.cursor = ProgressCursor(self._db)
        return self._db

    async def enqueue(
        self,
        kind: OutboxKind,
        ref_id: int,
        user_id: int,
        due_at: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> int:
        """
        Insert a task with attempt 0.

        Args:
            kind: What to deliver
            ref_id: Batch or resource id
            user_id: Owner of the referenced entity
            due_at: Earliest delivery time (default: now; never before creation)
            conn: Join this open transaction instead of autocommitting

        Returns:
            The new outbox id
        """
        now = utcnow()
        due = due_at if due_at is not None and due_at > now else now
        query = """
            INSERT INTO outbox (user_id, kind, ref_id, attempt, due_at, created_at)
            VALUES ($1, $2, $3, 0, $4, $5)
        """
        args = (user_id, OutboxKind(kind).value, ref_id, to_db_time(due), to_db_time(now))

        if conn is not None:
            task_id = await conn.insert(query, *args)
        else:
            db = await self._get_db()
            task_id = await db.insert(query, *args)

        logger.debug(f"Enqueued outbox task {task_id}: {OutboxKind(kind).value} ref={ref_id}")
        return task_id

    async def fetch_next_due(self, now: Optional[datetime] = None) -> Optional[OutboxTask]:
        """
        Claim the earliest due task whose lease is free.

        The claim stamps `claimed_until = now + lease` so a concurrent or
        re-entrant caller skips it until it is completed, rescheduled or
        the lease lapses.
        """
        db = await self._get_db()
        now = now or utcnow()
        now_s = to_db_time(now)

        async with db.transaction() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_TASK_COLUMNS}
                FROM outbox
                WHERE due_at <= $1
                  AND (claimed_until IS NULL OR claimed_until <= $1)
                ORDER BY due_at ASC, id ASC
                LIMIT 1
                """,
                now_s,
            )
            if row is None:
                return None

            claimed_until = to_db_time(now + timedelta(seconds=self.lease_seconds))
            await conn.execute(
                "UPDATE outbox SET claimed_until = $1 WHERE id = $2",
                claimed_until,
                row["id"],
            )
            row["claimed_until"] = claimed_until

        return OutboxTask.from_row(row)

    async def release_claims(self) -> int:
        """Drop every lease. Only safe when no other worker is running."""
        db = await self._get_db()
        released = await db.execute("UPDATE outbox SET claimed_until = NULL WHERE claimed_until IS NOT NULL")
        if released:
            logger.info(f"Released {released} stale outbox claim(s)")
        return released

    async def reschedule(
        self,
        task: OutboxTask,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
        retry_after: Optional[float] = None,
    ) -> OutboxTask:
        """
        Record a failed attempt and push the due time out.

        The delay is the exponential backoff for the new attempt count,
        raised to `retry_after` when the remote side asked for longer
        (still capped at the configured maximum).
        """
        db = await self._get_db()
        now = now or utcnow()
        attempt = task.attempt + 1

        delay = compute_backoff(attempt, self.base_backoff_seconds, self.max_backoff_seconds)
        if retry_after is not None:
            delay = max(delay, min(float(retry_after), float(self.max_backoff_seconds)))
        due_at = now + timedelta(seconds=delay)
        # Due time is strictly later after every failure
        if due_at <= task.due_at:
            due_at = task.due_at + timedelta(seconds=max(delay, 1.0))

        last_error = error[:1000] if error else None
        await db.execute(
            """
            UPDATE outbox
            SET attempt = $1, due_at = $2, claimed_until = NULL, last_error = $3
            WHERE id = $4
            """,
            attempt,
            to_db_time(due_at),
            last_error,
            task.id,
        )

        logger.warning(
            f"Outbox task {task.id} ({task.kind.value} ref={task.ref_id}) failed "
            f"(attempt {attempt}), retry at {due_at.isoformat()}: {error}"
        )
        return task.model_copy(
            update={"attempt": attempt, "due_at": due_at, "claimed_until": None, "last_error": last_error}
        )

    async def complete(self, task: OutboxTask, conn: Optional[Connection] = None) -> int:
        """
        Delete the task and advance the progress cursor atomically.

        Returns:
            The cursor value after completion
        """
        if conn is not None:
            return await self._complete(task, conn)

        db = await self._get_db()
        async with db.transaction() as tx:
            return await self._complete(task, tx)

    async def _complete(self, task: OutboxTask, conn: Connection) -> int:
        await conn.execute("DELETE FROM outbox WHERE id = $1", task.id)
        watermark = await self.cursor.advance(task.id, conn)
        logger.debug(f"Completed outbox task {task.id}, cursor={watermark}")
        return watermark

    async def count_remaining(self) -> int:
        db = await self._get_db()
        return await db.fetchval("SELECT COUNT(*) FROM outbox") or 0

    async def next_due_at(self) -> Optional[datetime]:
        """Earliest due time over all remaining tasks."""
        db = await self._get_db()
        return from_db_time(await db.fetchval("SELECT MIN(due_at) FROM outbox"))

    async def max_attempt(self) -> int:
        db = await self._get_db()
        return await db.fetchval("SELECT MAX(attempt) FROM outbox") or 0

    async def get_task(self, task_id: int) -> Optional[OutboxTask]:
        db = await self._get_db()
        row = await db.fetchrow(f"SELECT {_TASK_COLUMNS} FROM outbox WHERE id = $1", task_id)
        return OutboxTask.from_row(row) if row else None

    async def get_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Get outbox statistics."""
        db = await self._get_db()
        now_s = to_db_time(now or utcnow())

        rows = await db.fetch(
            """
            SELECT kind, COUNT(*) AS count
            FROM outbox
            GROUP BY kind
            """
        )
        by_kind = {kind.value: 0 for kind in OutboxKind}
        for row in rows:
            by_kind[row["kind"]] = row["count"]

        due = await db.fetchval("SELECT COUNT(*) FROM outbox WHERE due_at <= $1", now_s)
        retrying = await db.fetchval("SELECT COUNT(*) FROM outbox WHERE attempt > 0")
        oldest = await db.fetchval("SELECT MIN(created_at) FROM outbox")
        next_due = await self.next_due_at()

        return {
            "pending": sum(by_kind.values()),
            "due": due or 0,
            "retrying": retrying or 0,
            "by_kind": by_kind,
            "max_attempt": await self.max_attempt(),
            "oldest_created_at": from_db_time(oldest).isoformat() if oldest else None,
            "next_due_at": next_due.isoformat() if next_due else None,
            "cursor": await self.cursor.get(),
        }
