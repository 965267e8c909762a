"""
Batch Workflow Engine

Manages the batch lifecycle (open -> committed | rolled_back), the per-user
current-batch pointer, and enqueues delivery work on commit.

Every transition and its side effects run in one transaction, so the
outbox holds a task if and only if the state change was committed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import logging

from ..database.adapter import Connection, DatabaseAdapter, get_database
from ..errors import ConflictError, InvalidStateError, NotFoundError
from ..observability.metrics import record_counter
from ..outbox.models import OutboxKind
from ..outbox.queue import OutboxQueue
from ..timeutil import to_db_time, utcnow
from .models import Batch, BatchState, Resource, ResourcePayload

logger = logging.getLogger(__name__)


# Valid state transitions
BATCH_TRANSITIONS: Dict[BatchState, List[BatchState]] = {
    BatchState.OPEN: [BatchState.COMMITTED, BatchState.ROLLED_BACK],
    BatchState.COMMITTED: [],  # Terminal state
    BatchState.ROLLED_BACK: [],  # Terminal state
}


@dataclass
class BatchTransition:
    """Record of a batch state transition."""
    batch_id: int
    user_id: int
    from_state: str
    to_state: str
    title: Optional[str] = None
    enqueued_task_ids: List[int] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)


_BATCH_COLUMNS = "id, user_id, state, title, external_id, created_at, committed_at, rolled_back_at"
_RESOURCE_COLUMNS = (
    "id, user_id, batch_id, kind, content, source_message_id, sequence, "
    "text, media_name, media_url, external_id, created_at"
)


def _clean_title(title: Optional[str]) -> Optional[str]:
    if title is None:
        return None
    title = title.strip()
    return title or None


class BatchWorkflowEngine:
    """
    Manages batch lifecycle and the current-batch pointer.
    """

    def __init__(self, db: Optional[DatabaseAdapter] = None, queue: Optional[OutboxQueue] = None):
        self._db = db
        self.queue = queue or OutboxQueue(db)

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def get_or_create_user(
        self,
        platform_user_id: int,
        username: Optional[str] = None,
        display_name: Optional[str] = None
    ) -> int:
        """Return the internal user id, creating the user on first sight."""
        db = await self._get_db()

        async with db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO users (platform_user_id, username, display_name, created_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT(platform_user_id) DO UPDATE SET
                    username = COALESCE(excluded.username, users.username),
                    display_name = COALESCE(excluded.display_name, users.display_name)
                """,
                platform_user_id, username, display_name, to_db_time(utcnow())
            )
            return await conn.fetchval(
                "SELECT id FROM users WHERE platform_user_id = $1",
                platform_user_id
            )

    async def current_open_batch_id(self, user_id: int) -> Optional[int]:
        """Resolve the user's pointer to an open batch, if any."""
        db = await self._get_db()
        return await self._current_open_batch_id(db, user_id)

    async def _current_open_batch_id(self, conn, user_id: int) -> Optional[int]:
        return await conn.fetchval(
            """
            SELECT c.batch_id
            FROM current_batch c
            JOIN batches b ON b.id = c.batch_id
            WHERE c.user_id = $1 AND b.state = $2
            """,
            user_id, BatchState.OPEN.value
        )

    async def open_batch(self, user_id: int) -> int:
        """
        Open a new batch for a user and point the user at it.

        Raises:
            NotFoundError: Unknown user
            ConflictError: The user already has an open batch
        """
        db = await self._get_db()

        async with db.transaction() as conn:
            if not await conn.fetchval("SELECT id FROM users WHERE id = $1", user_id):
                raise NotFoundError("User", user_id)

            existing = await conn.fetchval(
                "SELECT id FROM batches WHERE user_id = $1 AND state = $2",
                user_id, BatchState.OPEN.value
            )
            if existing is not None:
                raise ConflictError(
                    f"User {user_id} already has open batch {existing}"
                )

            batch_id = await conn.insert(
                "INSERT INTO batches (user_id, state, created_at) VALUES ($1, $2, $3)",
                user_id, BatchState.OPEN.value, to_db_time(utcnow())
            )
            await conn.execute(
                """
                INSERT INTO current_batch (user_id, batch_id) VALUES ($1, $2)
                ON CONFLICT(user_id) DO UPDATE SET batch_id = excluded.batch_id
                """,
                user_id, batch_id
            )

        logger.info(f"Opened batch {batch_id} for user {user_id}")
        return batch_id

    async def attach_resource(self, batch_id: int, payload: ResourcePayload) -> int:
        """
        Attach a resource to an open batch.

        Re-submitting a resource already stored for the same user returns
        the existing id and changes nothing.

        Raises:
            NotFoundError: Unknown batch
            InvalidStateError: The batch is not open
        """
        db = await self._get_db()

        async with db.transaction() as conn:
            batch = await self._load_batch(conn, batch_id)
            if batch.state != BatchState.OPEN:
                raise InvalidStateError(
                    f"Cannot attach to batch {batch_id} in state {batch.state.value}"
                )

            existing = await self._find_duplicate(conn, batch.user_id, payload)
            if existing is not None:
                logger.info(f"Duplicate resource for batch {batch_id}, returning {existing}")
                return existing

            return await self._insert_resource(conn, batch.user_id, batch_id, payload)

    async def record_resource(self, user_id: int, payload: ResourcePayload) -> int:
        """
        Store an incoming resource for a user.

        Goes into the user's open batch when there is one. Otherwise it is
        stored standalone and its delivery task is enqueued right away.
        """
        db = await self._get_db()

        async with db.transaction() as conn:
            if not await conn.fetchval("SELECT id FROM users WHERE id = $1", user_id):
                raise NotFoundError("User", user_id)

            existing = await self._find_duplicate(conn, user_id, payload)
            if existing is not None:
                return existing

            batch_id = await self._current_open_batch_id(conn, user_id)
            resource_id = await self._insert_resource(conn, user_id, batch_id, payload)

            if batch_id is None:
                await self.queue.enqueue(
                    OutboxKind.CREATE_RESOURCE_DOCUMENT, resource_id, user_id, conn=conn
                )
                logger.info(f"Stored standalone resource {resource_id} for user {user_id}")

        return resource_id

    async def commit(self, batch_id: int, title: Optional[str] = None) -> BatchTransition:
        """
        Commit an open batch and enqueue its delivery.

        Enqueues one batch-document task when the batch has a title,
        then one resource-document task per resource in sequence order.

        Raises:
            NotFoundError: Unknown batch
            InvalidStateError: The batch is not open
        """
        db = await self._get_db()
        now = utcnow()

        async with db.transaction() as conn:
            batch = await self._load_batch(conn, batch_id)
            self._validate_transition(batch, BatchState.COMMITTED)

            await conn.execute(
                """
                UPDATE batches
                SET state = $1, committed_at = $2, title = COALESCE($3, title)
                WHERE id = $4
                """,
                BatchState.COMMITTED.value, to_db_time(now), _clean_title(title), batch_id
            )
            await self._clear_pointer(conn, batch.user_id, batch_id)

            final_title = _clean_title(
                await conn.fetchval("SELECT title FROM batches WHERE id = $1", batch_id)
            )

            enqueued = []
            if final_title:
                enqueued.append(await self.queue.enqueue(
                    OutboxKind.CREATE_BATCH_DOCUMENT, batch_id, batch.user_id, conn=conn
                ))

            resource_ids = await conn.fetch(
                "SELECT id FROM resources WHERE batch_id = $1 ORDER BY sequence ASC, id ASC",
                batch_id
            )
            for row in resource_ids:
                enqueued.append(await self.queue.enqueue(
                    OutboxKind.CREATE_RESOURCE_DOCUMENT, row["id"], batch.user_id, conn=conn
                ))

        record_counter("batches_committed_total", 1, {"titled": bool(final_title)})
        logger.info(
            f"Batch {batch_id} committed: {len(resource_ids)} resource(s), "
            f"{len(enqueued)} task(s) enqueued"
        )

        return BatchTransition(
            batch_id=batch_id,
            user_id=batch.user_id,
            from_state=batch.state.value,
            to_state=BatchState.COMMITTED.value,
            title=final_title,
            enqueued_task_ids=enqueued,
            timestamp=now,
        )

    async def rollback(self, batch_id: int) -> BatchTransition:
        """
        Discard an open batch. Its resources are detached; nothing is enqueued.

        Raises:
            NotFoundError: Unknown batch
            InvalidStateError: The batch is not open
        """
        db = await self._get_db()
        now = utcnow()

        async with db.transaction() as conn:
            batch = await self._load_batch(conn, batch_id)
            self._validate_transition(batch, BatchState.ROLLED_BACK)

            await conn.execute(
                "UPDATE batches SET state = $1, rolled_back_at = $2 WHERE id = $3",
                BatchState.ROLLED_BACK.value, to_db_time(now), batch_id
            )
            await self._clear_pointer(conn, batch.user_id, batch_id)
            detached = await conn.execute(
                "UPDATE resources SET batch_id = NULL WHERE batch_id = $1",
                batch_id
            )

        record_counter("batches_rolled_back_total", 1)
        logger.info(f"Batch {batch_id} rolled back, {detached} resource(s) detached")

        return BatchTransition(
            batch_id=batch_id,
            user_id=batch.user_id,
            from_state=batch.state.value,
            to_state=BatchState.ROLLED_BACK.value,
            timestamp=now,
        )

    async def get_valid_transitions(self, batch_id: int) -> List[str]:
        """Get valid next states for a batch."""
        batch = await self.get_batch(batch_id)
        return [s.value for s in BATCH_TRANSITIONS.get(batch.state, [])]

    async def get_batch(self, batch_id: int) -> Batch:
        db = await self._get_db()
        return await self._load_batch(db, batch_id)

    async def get_resource(self, resource_id: int) -> Resource:
        db = await self._get_db()
        row = await db.fetchrow(
            f"SELECT {_RESOURCE_COLUMNS} FROM resources WHERE id = $1",
            resource_id
        )
        if not row:
            raise NotFoundError("Resource", resource_id)
        return Resource.from_row(row)

    async def list_resources(self, batch_id: int) -> List[Resource]:
        """Resources of a batch in sequence order."""
        db = await self._get_db()
        rows = await db.fetch(
            f"SELECT {_RESOURCE_COLUMNS} FROM resources WHERE batch_id = $1 ORDER BY sequence ASC, id ASC",
            batch_id
        )
        return [Resource.from_row(r) for r in rows]

    async def _load_batch(self, conn, batch_id: int) -> Batch:
        row = await conn.fetchrow(f"SELECT {_BATCH_COLUMNS} FROM batches WHERE id = $1", batch_id)
        if not row:
            raise NotFoundError("Batch", batch_id)
        return Batch.from_row(row)

    def _validate_transition(self, batch: Batch, to_state: BatchState) -> None:
        valid = BATCH_TRANSITIONS.get(batch.state, [])
        if to_state not in valid:
            raise InvalidStateError(
                f"Invalid transition for batch {batch.id}: {batch.state.value} -> {to_state.value}"
            )

    async def _clear_pointer(self, conn: Connection, user_id: int, batch_id: int) -> None:
        await conn.execute(
            "DELETE FROM current_batch WHERE user_id = $1 AND batch_id = $2",
            user_id, batch_id
        )

    async def _find_duplicate(self, conn: Connection, user_id: int, payload: ResourcePayload) -> Optional[int]:
        return await conn.fetchval(
            """
            SELECT id FROM resources
            WHERE user_id = $1 AND source_message_id = $2 AND kind = $3 AND content = $4
            """,
            user_id, payload.source_message_id, payload.kind.value, payload.content
        )

    async def _insert_resource(
        self,
        conn: Connection,
        user_id: int,
        batch_id: Optional[int],
        payload: ResourcePayload
    ) -> int:
        if batch_id is None:
            sequence = 1
        else:
            sequence = await conn.fetchval(
                "SELECT COALESCE(MAX(sequence), 0) + 1 FROM resources WHERE batch_id = $1",
                batch_id
            )

        resource_id = await conn.insert(
            """
            INSERT INTO resources (
                user_id, batch_id, kind, content, source_message_id, sequence,
                text, media_name, media_url, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            user_id,
            batch_id,
            payload.kind.value,
            payload.content,
            payload.source_message_id,
            sequence,
            payload.text,
            payload.media_name,
            payload.media_url,
            to_db_time(utcnow())
        )
        logger.debug(f"Stored resource {resource_id} (batch={batch_id}, sequence={sequence})")
        return resource_id
