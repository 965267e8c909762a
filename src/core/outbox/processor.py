"""
Outbox Delivery Worker

Background worker that claims due outbox tasks one at a time and mirrors
the referenced batch or resource into the document database.

Per task:
- referenced entity gone (or batch rolled back): complete without a call
- entity already has an external id: complete without a call
- resource whose titled parent batch has no external id yet: retry later
- otherwise call the client under a timeout, store the external id, complete

Retryable failures are rescheduled with capped exponential backoff.
Fatal failures are dead-lettered and completed in one transaction.
"""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Optional

from ..batches.models import Batch, BatchState, Resource, ResourceKind
from ..config import Settings
from ..database.adapter import DatabaseAdapter, get_database
from ..documents.base import DocumentClient
from ..documents.models import BatchDocument, Document, ResourceDocument
from ..errors import FatalDeliveryError, RetryableDeliveryError
from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import add_event_to_span, create_span
from ..timeutil import utcnow
from .dlq import DLQManager
from .models import OutboxKind, OutboxTask
from .queue import OutboxQueue

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled"
DEFAULT_STOP_TIMEOUT = 10.0


class DeliveryOutcome(str, Enum):
    """What one delivery step did with its task."""
    DELIVERED = "delivered"
    ALREADY_DELIVERED = "already_delivered"
    SKIPPED = "skipped"
    RETRY = "retry"
    DEAD_LETTERED = "dead_lettered"


class DeliveryWorker:
    """
    Processes outbox tasks and delivers documents.

    Features:
    - Claims due tasks in (due_at, id) order
    - Idempotent: never calls the client for an entity that has an external id
    - Retries transient failures with exponential backoff
    - Dead-letters permanent failures
    - Graceful stop: the in-flight step finishes within a grace period
    """

    def __init__(
        self,
        client: DocumentClient,
        db: Optional[DatabaseAdapter] = None,
        queue: Optional[OutboxQueue] = None,
        dlq: Optional[DLQManager] = None,
        poll_interval: float = 0.5,
        delivery_timeout: float = 30.0,
        max_attempts: Optional[int] = None,
    ):
        self.client = client
        self._db = db
        self.queue = queue or OutboxQueue(db)
        self.dlq = dlq or DLQManager(db, self.queue)
        self.poll_interval = poll_interval
        self.delivery_timeout = delivery_timeout
        self.max_attempts = max_attempts
        self.last_outcome: Optional[DeliveryOutcome] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: DocumentClient,
        db: Optional[DatabaseAdapter] = None,
    ) -> "DeliveryWorker":
        app = settings.app
        queue = OutboxQueue(
            db,
            base_backoff_seconds=app.base_backoff_seconds,
            max_backoff_seconds=app.max_backoff_seconds,
            lease_seconds=app.lease_seconds,
        )
        return cls(
            client,
            db=db,
            queue=queue,
            poll_interval=app.poll_interval_seconds,
            delivery_timeout=app.delivery_timeout_seconds,
            max_attempts=app.max_attempts,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def start(self):
        """Start the worker loop."""
        if self._running:
            return

        # Single active worker: leases left by a crashed run are stale
        await self.queue.release_claims()

        self._running = True
        self._wake.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("DeliveryWorker started")

    async def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT):
        """
        Stop polling and wait for the in-flight step.

        If it does not finish within `timeout` it is cancelled; the task
        stays in the outbox and is picked up again on the next start.
        """
        self._running = False
        self._wake.set()
        if self._task:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"DeliveryWorker did not stop within {timeout}s, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        logger.info("DeliveryWorker stopped")

    async def _sleep(self, seconds: float):
        """Sleep until the next poll, or until stop() wakes us."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self):
        """Main processing loop."""
        while self._running:
            try:
                processed = await self.process_next()
                if not processed:
                    await self._sleep(self.poll_interval)
            except Exception as e:
                logger.error(f"DeliveryWorker error: {e}", exc_info=True)
                await self._sleep(self.poll_interval)

    async def process_next(self, now: Optional[datetime] = None) -> bool:
        """
        Run one delivery step.

        Returns:
            False if no task was due, True otherwise
        """
        now = now or utcnow()
        task = await self.queue.fetch_next_due(now)
        if task is None:
            return False

        started = time.monotonic()
        with create_span(
            "outbox.deliver",
            {
                "outbox.id": task.id,
                "outbox.kind": task.kind.value,
                "outbox.ref_id": task.ref_id,
                "outbox.attempt": task.attempt,
            },
        ) as span:
            outcome = await self._process_task(task, now)
            span.set_attribute("outbox.outcome", outcome.value)

        record_histogram(
            "outbox_processing_duration_seconds",
            time.monotonic() - started,
            {"kind": task.kind.value, "outcome": outcome.value},
        )
        self.last_outcome = outcome
        return True

    async def _process_task(self, task: OutboxTask, now: datetime) -> DeliveryOutcome:
        try:
            if task.kind == OutboxKind.CREATE_BATCH_DOCUMENT:
                return await self._deliver_batch(task)
            elif task.kind == OutboxKind.CREATE_RESOURCE_DOCUMENT:
                return await self._deliver_resource(task)
            else:
                raise FatalDeliveryError(f"Unsupported outbox kind: {task.kind}")
        except RetryableDeliveryError as e:
            return await self._retry(task, e, now)
        except FatalDeliveryError as e:
            return await self._dead_letter(task, str(e), now)

    async def _deliver_batch(self, task: OutboxTask) -> DeliveryOutcome:
        batch = await self._fetch_batch(task.ref_id)
        if batch is None:
            return await self._skip(task, f"batch {task.ref_id} no longer exists")
        if batch.state == BatchState.ROLLED_BACK:
            return await self._skip(task, f"batch {batch.id} was rolled back")
        if batch.state == BatchState.OPEN:
            raise RetryableDeliveryError(f"batch {batch.id} is not committed yet")

        if batch.external_id:
            return await self._already_delivered(task, batch.external_id)

        title = batch.title.strip() if batch.has_title else DEFAULT_TITLE
        document = BatchDocument(batch_id=batch.id, title=title)
        external_id = await self._call_client(task.kind, document)

        db = await self._get_db()
        await db.execute(
            "UPDATE batches SET external_id = $1 WHERE id = $2 AND external_id IS NULL",
            external_id, batch.id
        )
        return await self._delivered(task, external_id)

    async def _deliver_resource(self, task: OutboxTask) -> DeliveryOutcome:
        resource = await self._fetch_resource(task.ref_id)
        if resource is None:
            return await self._skip(task, f"resource {task.ref_id} no longer exists")

        if resource.external_id:
            return await self._already_delivered(task, resource.external_id)

        parent_external_id = None
        if resource.batch_id is not None:
            batch = await self._fetch_batch(resource.batch_id)
            if batch is not None:
                if batch.state == BatchState.ROLLED_BACK:
                    return await self._skip(task, f"parent batch {batch.id} was rolled back")
                if batch.state == BatchState.OPEN:
                    raise RetryableDeliveryError(f"parent batch {batch.id} is not committed yet")
                # An untitled batch never gets a page; its resources go standalone
                if batch.has_title:
                    if not batch.external_id:
                        raise RetryableDeliveryError(
                            f"parent batch {batch.id} has no external id yet; "
                            f"retry resource {resource.id} after the batch page"
                        )
                    parent_external_id = batch.external_id

        text = resource.text
        if not text and resource.kind == ResourceKind.TEXT:
            text = resource.content

        document = ResourceDocument(
            resource_id=resource.id,
            kind=resource.kind,
            order=resource.sequence,
            parent_external_id=parent_external_id,
            text=text or None,
            media_name=resource.media_name or None,
            media_url=resource.media_url or None,
            local_path=resource.content if resource.kind != ResourceKind.TEXT else None,
        )
        external_id = await self._call_client(task.kind, document)

        db = await self._get_db()
        await db.execute(
            "UPDATE resources SET external_id = $1 WHERE id = $2 AND external_id IS NULL",
            external_id, resource.id
        )
        return await self._delivered(task, external_id)

    async def _call_client(self, kind: OutboxKind, document: Document) -> str:
        try:
            return await asyncio.wait_for(
                self.client.create_or_update_document(kind, document),
                timeout=self.delivery_timeout,
            )
        except asyncio.TimeoutError as e:
            raise RetryableDeliveryError(
                f"{self.client.name} call timed out after {self.delivery_timeout}s"
            ) from e

    async def _delivered(self, task: OutboxTask, external_id: str) -> DeliveryOutcome:
        # external id is already durable; a crash here only replays the short-circuit
        await self.queue.complete(task)
        record_counter("outbox_delivered_total", 1, {"kind": task.kind.value})
        logger.info(
            f"Outbox task {task.id} delivered: {task.kind.value} ref={task.ref_id} -> {external_id}"
        )
        return DeliveryOutcome.DELIVERED

    async def _already_delivered(self, task: OutboxTask, external_id: str) -> DeliveryOutcome:
        await self.queue.complete(task)
        record_counter("outbox_skipped_total", 1, {"kind": task.kind.value, "reason": "already_delivered"})
        logger.info(
            f"Outbox task {task.id}: {task.kind.value} ref={task.ref_id} already has "
            f"external id {external_id}, skipping"
        )
        return DeliveryOutcome.ALREADY_DELIVERED

    async def _skip(self, task: OutboxTask, reason: str) -> DeliveryOutcome:
        await self.queue.complete(task)
        record_counter("outbox_skipped_total", 1, {"kind": task.kind.value, "reason": "missing"})
        add_event_to_span("outbox.skipped", {"reason": reason})
        logger.info(f"Outbox task {task.id} skipped: {reason}")
        return DeliveryOutcome.SKIPPED

    async def _retry(self, task: OutboxTask, error: RetryableDeliveryError, now: datetime) -> DeliveryOutcome:
        if self.max_attempts is not None and task.attempt + 1 >= self.max_attempts:
            return await self._dead_letter(
                task, f"retries exhausted after {task.attempt + 1} attempt(s): {error}", now
            )

        await self.queue.reschedule(task, str(error), now=now, retry_after=error.retry_after)
        record_counter("outbox_retried_total", 1, {"kind": task.kind.value})
        return DeliveryOutcome.RETRY

    async def _dead_letter(self, task: OutboxTask, error: str, now: datetime) -> DeliveryOutcome:
        db = await self._get_db()
        async with db.transaction() as conn:
            await self.dlq.record(task, error, conn, now=now)
            await self.queue.complete(task, conn)
        record_counter("outbox_dead_lettered_total", 1, {"kind": task.kind.value})
        return DeliveryOutcome.DEAD_LETTERED

    async def _fetch_batch(self, batch_id: int) -> Optional[Batch]:
        db = await self._get_db()
        row = await db.fetchrow(
            """
            SELECT id, user_id, state, title, external_id, created_at, committed_at, rolled_back_at
            FROM batches WHERE id = $1
            """,
            batch_id
        )
        return Batch.from_row(row) if row else None

    async def _fetch_resource(self, resource_id: int) -> Optional[Resource]:
        db = await self._get_db()
        row = await db.fetchrow(
            """
            SELECT id, user_id, batch_id, kind, content, source_message_id, sequence,
                   text, media_name, media_url, external_id, created_at
            FROM resources WHERE id = $1
            """,
            resource_id
        )
        return Resource.from_row(row) if row else None


# Global worker instance
_worker: Optional[DeliveryWorker] = None


async def start_delivery_worker(
    settings: Settings,
    client: DocumentClient,
    db: Optional[DatabaseAdapter] = None,
) -> DeliveryWorker:
    """Start the global delivery worker."""
    global _worker

    if _worker is None:
        _worker = DeliveryWorker.from_settings(settings, client, db)

    await _worker.start()
    return _worker


async def stop_delivery_worker(timeout: float = DEFAULT_STOP_TIMEOUT):
    """Stop the global delivery worker."""
    global _worker
    if _worker:
        await _worker.stop(timeout)
        _worker = None


def get_delivery_worker() -> Optional[DeliveryWorker]:
    """Get the global delivery worker instance."""
    return _worker
