"""
Outbox Progress Cursor

A monotonic watermark over outbox ids: every task with id <= the cursor
has been completed. It always sits strictly below the oldest pending id.
"""

import logging
from typing import Optional

from ..database.adapter import Connection, DatabaseAdapter, get_database
from ..timeutil import to_db_time, utcnow

logger = logging.getLogger(__name__)


class ProgressCursor:
    """Reads and advances the single-row `outbox_cursor` table."""

    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def get(self) -> int:
        """Return the last processed outbox id (0 before any completion)."""
        db = await self._get_db()
        value = await db.fetchval("SELECT last_processed_id FROM outbox_cursor WHERE id = 1")
        return value or 0

    async def advance(self, completed_id: int, conn: Connection) -> int:
        """
        Recompute the watermark after `completed_id` was deleted.

        Must run inside the transaction that deleted the task.

        Returns:
            The stored watermark (never lower than before)
        """
        current = await conn.fetchval("SELECT last_processed_id FROM outbox_cursor WHERE id = 1") or 0
        min_pending = await conn.fetchval("SELECT MIN(id) FROM outbox")

        if min_pending is not None:
            candidate = min_pending - 1
        else:
            # Nothing pending: every id handed out so far is done
            highest = await conn.fetchval("SELECT seq FROM sqlite_sequence WHERE name = 'outbox'")
            candidate = max(completed_id, highest or 0)

        watermark = max(current, candidate)
        if watermark != current:
            await conn.execute(
                """
                INSERT INTO outbox_cursor (id, last_processed_id, updated_at)
                VALUES (1, $1, $2)
                ON CONFLICT(id) DO UPDATE SET
                    last_processed_id = excluded.last_processed_id,
                    updated_at = excluded.updated_at
                """,
                watermark,
                to_db_time(utcnow()),
            )
            logger.debug(f"Outbox cursor advanced {current} -> {watermark}")
        return watermark
