"""
Tests for dead-letter management.
"""

import pytest

from src.core.batches.models import ResourceKind, ResourcePayload
from src.core.errors import FatalDeliveryError, NotFoundError
from src.core.outbox.models import OutboxKind
from src.core.outbox.processor import DeliveryOutcome


async def dead_letter_one(worker, engine, document_client, user_id, message_id=1):
    resource_id = await engine.record_resource(
        user_id,
        ResourcePayload(kind=ResourceKind.TEXT, content=f"m{message_id}", source_message_id=message_id),
    )
    document_client.script(FatalDeliveryError("HTTP 400: body failed validation"))
    await worker.process_next()
    assert worker.last_outcome == DeliveryOutcome.DEAD_LETTERED
    return resource_id


class TestDLQQueries:

    @pytest.mark.asyncio
    async def test_entry_recorded(self, worker, engine, dlq, document_client, user_id):
        resource_id = await dead_letter_one(worker, engine, document_client, user_id)

        (entry,) = await dlq.get_entries()
        assert entry.ref_id == resource_id
        assert entry.user_id == user_id
        assert entry.kind == OutboxKind.CREATE_RESOURCE_DOCUMENT.value
        assert entry.to_dict()["failed_at"] is not None
        assert (await dlq.get_entry(entry.id)).outbox_id == entry.outbox_id

    @pytest.mark.asyncio
    async def test_filter_by_user(self, worker, engine, dlq, document_client, user_id):
        other = await engine.get_or_create_user(3003)
        await dead_letter_one(worker, engine, document_client, user_id, 1)
        await dead_letter_one(worker, engine, document_client, other, 2)

        assert await dlq.get_count() == 2
        assert await dlq.get_count(user_id) == 1
        assert [e.user_id for e in await dlq.get_entries(user_id=other)] == [other]

    @pytest.mark.asyncio
    async def test_stats(self, worker, engine, dlq, document_client, user_id):
        await dead_letter_one(worker, engine, document_client, user_id)

        stats = await dlq.get_stats()

        assert stats["total_count"] == 1
        assert stats["by_kind"] == {"push_resource": 1}
        assert stats["oldest_entry"] is not None

    @pytest.mark.asyncio
    async def test_unknown_entry(self, dlq):
        with pytest.raises(NotFoundError):
            await dlq.get_entry(77)


class TestDLQActions:

    @pytest.mark.asyncio
    async def test_retry_reenqueues(self, worker, engine, queue, dlq, document_client, user_id):
        resource_id = await dead_letter_one(worker, engine, document_client, user_id)
        (entry,) = await dlq.get_entries()

        task_id = await dlq.retry_entry(entry.id, operator_id="ops")

        assert task_id > entry.outbox_id
        assert await dlq.get_count() == 0
        task = await queue.get_task(task_id)
        assert task.attempt == 0
        assert task.ref_id == resource_id

        await worker.process_next()
        assert worker.last_outcome == DeliveryOutcome.DELIVERED

    @pytest.mark.asyncio
    async def test_retry_unknown(self, dlq):
        with pytest.raises(NotFoundError):
            await dlq.retry_entry(123)

    @pytest.mark.asyncio
    async def test_purge_entry(self, worker, engine, dlq, document_client, user_id):
        await dead_letter_one(worker, engine, document_client, user_id)
        (entry,) = await dlq.get_entries()

        assert await dlq.purge_entry(entry.id) is True
        assert await dlq.purge_entry(entry.id) is False

    @pytest.mark.asyncio
    async def test_purge_old(self, worker, engine, dlq, document_client, user_id):
        await dead_letter_one(worker, engine, document_client, user_id)

        assert await dlq.purge_old(days=30) == 0
        assert await dlq.purge_old(days=0) == 1
        assert await dlq.get_count() == 0
