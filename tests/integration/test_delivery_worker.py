"""
Delivery worker tests.

The worker runs against an in-memory store and a recording document
client; each test drives it step by step with process_next().
"""

import asyncio
from datetime import timedelta

import pytest

from src.core.batches.models import ResourceKind, ResourcePayload
from src.core.documents.models import BatchDocument, ResourceDocument
from src.core.errors import FatalDeliveryError, RetryableDeliveryError
from src.core.outbox.models import OutboxKind
from src.core.outbox.processor import DeliveryOutcome, DeliveryWorker
from src.core.outbox.queue import compute_backoff
from src.core.timeutil import utcnow


def text(message_id: int, content: str = None, **kwargs) -> ResourcePayload:
    return ResourcePayload(
        kind=ResourceKind.TEXT,
        content=content or f"message {message_id}",
        source_message_id=message_id,
        **kwargs,
    )


async def committed_batch(engine, user_id, title="Trip", resources=1):
    batch_id = await engine.open_batch(user_id)
    resource_ids = [await engine.attach_resource(batch_id, text(i + 1)) for i in range(resources)]
    await engine.commit(batch_id, title=title)
    return batch_id, resource_ids


async def drain(worker, now=None, limit=50):
    outcomes = []
    for _ in range(limit):
        if not await worker.process_next(now):
            break
        outcomes.append(worker.last_outcome)
    return outcomes


class TestHappyPath:
    """Batch page first, then resource pages related to it."""

    @pytest.mark.asyncio
    async def test_batch_and_resource_delivered(self, worker, engine, queue, document_client, user_id):
        batch_id, (resource_id,) = await committed_batch(engine, user_id)

        outcomes = await drain(worker)

        assert outcomes == [DeliveryOutcome.DELIVERED, DeliveryOutcome.DELIVERED]
        (kind1, doc1), (kind2, doc2) = document_client.calls
        assert kind1 == OutboxKind.CREATE_BATCH_DOCUMENT
        assert doc1 == BatchDocument(batch_id=batch_id, title="Trip")
        assert kind2 == OutboxKind.CREATE_RESOURCE_DOCUMENT
        assert doc2.parent_external_id == "page-1"
        assert doc2.order == 1

        assert (await engine.get_batch(batch_id)).external_id == "page-1"
        assert (await engine.get_resource(resource_id)).external_id == "page-2"
        assert await queue.count_remaining() == 0
        assert await queue.cursor.get() == 2

    @pytest.mark.asyncio
    async def test_untitled_batch_resources_have_no_parent(self, worker, engine, document_client, user_id):
        await committed_batch(engine, user_id, title=None, resources=2)

        await drain(worker)

        kinds = [kind for kind, _ in document_client.calls]
        docs = [doc for _, doc in document_client.calls]
        assert kinds == [OutboxKind.CREATE_RESOURCE_DOCUMENT] * 2
        assert [d.parent_external_id for d in docs] == [None, None]
        assert [d.order for d in docs] == [1, 2]

    @pytest.mark.asyncio
    async def test_text_resource_defaults_text_to_content(self, worker, engine, document_client, user_id):
        await engine.record_resource(user_id, text(1, "hello there"))

        await drain(worker)

        (_, document), = document_client.calls
        assert isinstance(document, ResourceDocument)
        assert document.text == "hello there"
        assert document.local_path is None
        assert document.parent_external_id is None

    @pytest.mark.asyncio
    async def test_media_fields_passed_through(self, worker, engine, document_client, user_id):
        payload = ResourcePayload(
            kind=ResourceKind.PHOTO,
            content="/data/photo.jpg",
            source_message_id=5,
            text="caption",
            media_name="photo.jpg",
            media_url="https://cdn.example.com/photo.jpg",
        )
        await engine.record_resource(user_id, payload)

        await drain(worker)

        (_, document), = document_client.calls
        assert document.kind == ResourceKind.PHOTO
        assert document.text == "caption"
        assert document.media_url == "https://cdn.example.com/photo.jpg"
        assert document.local_path == "/data/photo.jpg"

    @pytest.mark.asyncio
    async def test_nothing_due(self, worker, document_client):
        assert await worker.process_next() is False
        assert document_client.calls == []


class TestRetries:
    """Retryable failures back off and try again."""

    @pytest.mark.asyncio
    async def test_three_failures_then_success(self, worker, engine, db, queue, document_client, user_id):
        batch_id, _ = await committed_batch(engine, user_id, resources=0)
        error = RetryableDeliveryError("HTTP 503")
        document_client.script(error, error, error)
        task_id = await db.fetchval("SELECT id FROM outbox")

        now = utcnow()
        dues = []
        for attempt in range(1, 4):
            assert await worker.process_next(now)
            assert worker.last_outcome == DeliveryOutcome.RETRY
            task = await queue.get_task(task_id)
            assert task.due_at == now + timedelta(seconds=compute_backoff(attempt, 5, 60))
            dues.append(task.due_at)
            now = task.due_at

        assert task.attempt == 3
        assert dues == sorted(dues) and len(set(dues)) == 3
        assert task.last_error == "HTTP 503"

        assert await worker.process_next(now)
        assert worker.last_outcome == DeliveryOutcome.DELIVERED
        assert len(document_client.calls) == 4
        assert (await engine.get_batch(batch_id)).external_id == "page-1"

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self, worker, engine, queue, document_client, user_id):
        await committed_batch(engine, user_id, resources=0)
        document_client.script(RetryableDeliveryError("429", retry_after=30))
        now = utcnow()

        await worker.process_next(now)

        assert await queue.next_due_at() == now + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, db, queue, dlq, engine, document_client, user_id):
        worker = DeliveryWorker(document_client, db=db, queue=queue, dlq=dlq, delivery_timeout=0.05)
        document_client.delay = 1.0
        await committed_batch(engine, user_id, resources=0)

        await worker.process_next()

        assert worker.last_outcome == DeliveryOutcome.RETRY
        row = await db.fetchrow("SELECT attempt, last_error FROM outbox")
        assert row["attempt"] == 1
        assert "timed out" in row["last_error"]

    @pytest.mark.asyncio
    async def test_max_attempts_dead_letters(self, db, queue, dlq, engine, document_client, user_id):
        worker = DeliveryWorker(document_client, db=db, queue=queue, dlq=dlq, max_attempts=2)
        await committed_batch(engine, user_id, resources=0)
        document_client.script(RetryableDeliveryError("down"), RetryableDeliveryError("down"))

        await worker.process_next()
        assert worker.last_outcome == DeliveryOutcome.RETRY

        await worker.process_next(utcnow() + timedelta(seconds=61))
        assert worker.last_outcome == DeliveryOutcome.DEAD_LETTERED

        (entry,) = await dlq.get_entries()
        assert entry.attempts == 2
        assert "retries exhausted" in entry.error
        assert await queue.count_remaining() == 0


class TestOrdering:
    """A resource never goes out before its titled batch page."""

    @pytest.mark.asyncio
    async def test_resource_waits_for_parent_page(self, worker, engine, queue, document_client, user_id):
        batch_id, (resource_id,) = await committed_batch(engine, user_id)
        document_client.script(RetryableDeliveryError("HTTP 502"))
        now = utcnow()

        assert await drain(worker, now) == [DeliveryOutcome.RETRY, DeliveryOutcome.RETRY]
        # The resource was held back without calling the client
        assert len(document_client.calls) == 1

        later = now + timedelta(seconds=6)
        assert await drain(worker, later) == [DeliveryOutcome.DELIVERED, DeliveryOutcome.DELIVERED]

        batch = await engine.get_batch(batch_id)
        (_, resource_doc) = document_client.calls[-1]
        assert resource_doc.resource_id == resource_id
        assert resource_doc.parent_external_id == batch.external_id
        assert await queue.count_remaining() == 0

    @pytest.mark.asyncio
    async def test_open_batch_task_is_retried(self, worker, engine, queue, document_client, user_id):
        batch_id = await engine.open_batch(user_id)
        await queue.enqueue(OutboxKind.CREATE_BATCH_DOCUMENT, batch_id, user_id)

        await worker.process_next()

        assert worker.last_outcome == DeliveryOutcome.RETRY
        assert document_client.calls == []


class TestIdempotence:
    """At most one document per entity."""

    @pytest.mark.asyncio
    async def test_crash_after_persisting_external_id(self, worker, engine, queue, document_client, user_id, monkeypatch):
        batch_id, _ = await committed_batch(engine, user_id, resources=0)
        original = queue.complete

        async def crash(task, conn=None):
            monkeypatch.setattr(queue, "complete", original)
            raise RuntimeError("process killed")

        monkeypatch.setattr(queue, "complete", crash)

        with pytest.raises(RuntimeError):
            await worker.process_next()

        assert (await engine.get_batch(batch_id)).external_id == "page-1"
        assert await queue.count_remaining() == 1

        # Restart
        await queue.release_claims()
        await worker.process_next()

        assert worker.last_outcome == DeliveryOutcome.ALREADY_DELIVERED
        assert len(document_client.calls) == 1
        assert await queue.count_remaining() == 0

    @pytest.mark.asyncio
    async def test_duplicate_task_does_not_call_client(self, worker, engine, queue, document_client, user_id):
        batch_id, _ = await committed_batch(engine, user_id, resources=0)
        await drain(worker)
        await queue.enqueue(OutboxKind.CREATE_BATCH_DOCUMENT, batch_id, user_id)

        await worker.process_next()

        assert worker.last_outcome == DeliveryOutcome.ALREADY_DELIVERED
        assert len(document_client.calls) == 1


class TestSkipAndDeadLetter:

    @pytest.mark.asyncio
    async def test_missing_entity_is_skipped(self, worker, queue, document_client, user_id):
        await queue.enqueue(OutboxKind.CREATE_RESOURCE_DOCUMENT, 999, user_id)

        await worker.process_next()

        assert worker.last_outcome == DeliveryOutcome.SKIPPED
        assert document_client.calls == []
        assert await queue.count_remaining() == 0

    @pytest.mark.asyncio
    async def test_rolled_back_batch_is_skipped(self, worker, engine, queue, document_client, user_id):
        batch_id = await engine.open_batch(user_id)
        await engine.rollback(batch_id)
        await queue.enqueue(OutboxKind.CREATE_BATCH_DOCUMENT, batch_id, user_id)

        await worker.process_next()

        assert worker.last_outcome == DeliveryOutcome.SKIPPED
        assert document_client.calls == []

    @pytest.mark.asyncio
    async def test_fatal_error_dead_letters_and_moves_on(self, worker, engine, queue, dlq, document_client, user_id):
        await committed_batch(engine, user_id, title=None, resources=2)
        document_client.script(FatalDeliveryError("HTTP 400: validation_error"))

        outcomes = await drain(worker)

        assert outcomes == [DeliveryOutcome.DEAD_LETTERED, DeliveryOutcome.DELIVERED]
        (entry,) = await dlq.get_entries()
        assert entry.kind == OutboxKind.CREATE_RESOURCE_DOCUMENT.value
        assert entry.attempts == 1
        assert "validation_error" in entry.error
        assert await queue.count_remaining() == 0
        assert await queue.cursor.get() == 2


class TestWorkerLifecycle:
    """Test start/stop of the background loop."""

    @pytest.mark.asyncio
    async def test_background_loop_delivers(self, worker, engine, queue, document_client, user_id):
        await committed_batch(engine, user_id, resources=2)

        await worker.start()
        assert worker.is_running
        try:
            for _ in range(200):
                if await queue.count_remaining() == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert not worker.is_running
        assert await queue.count_remaining() == 0
        assert len(document_client.calls) == 3

    @pytest.mark.asyncio
    async def test_stop_cancels_slow_delivery(self, db, queue, dlq, engine, document_client, user_id):
        worker = DeliveryWorker(document_client, db=db, queue=queue, dlq=dlq, poll_interval=0.01, delivery_timeout=30)
        document_client.delay = 30
        batch_id, _ = await committed_batch(engine, user_id, resources=0)

        await worker.start()
        for _ in range(200):
            if document_client.calls:
                break
            await asyncio.sleep(0.01)
        await worker.stop(timeout=0.05)

        assert not worker.is_running
        # The task survives and is picked up again on the next start
        assert await queue.count_remaining() == 1
        assert (await engine.get_batch(batch_id)).external_id is None

    @pytest.mark.asyncio
    async def test_start_releases_stale_claims(self, worker, engine, queue, user_id):
        await committed_batch(engine, user_id, resources=0)
        await queue.fetch_next_due()

        await worker.start()
        try:
            for _ in range(200):
                if await queue.count_remaining() == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert await queue.count_remaining() == 0
