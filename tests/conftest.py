"""
Shared Test Fixtures

In-memory SQLite store with the full schema, the services built on it,
and a recording document client whose responses can be scripted.
"""

import asyncio
from collections import deque
from typing import Any, Deque, List, Tuple

import pytest

from src.core.batches.workflow import BatchWorkflowEngine
from src.core.config import parse_config
from src.core.database.adapter import DatabaseAdapter, DatabaseConfig
from src.core.database.migrate import apply_migrations
from src.core.documents.base import DocumentClient
from src.core.documents.models import Document
from src.core.outbox.dlq import DLQManager
from src.core.outbox.models import OutboxKind
from src.core.outbox.processor import DeliveryWorker
from src.core.outbox.queue import OutboxQueue


def make_config(**app_overrides) -> dict:
    """Minimal valid configuration mapping."""
    app = {
        "data_dir": "./data",
        "poll_interval_ms": 10,
        "max_backoff_seconds": 60,
    }
    app.update(app_overrides)
    return {
        "app": app,
        "notion": {
            "token": "secret-token",
            "version": "2022-06-28",
            "databases": {
                "main": {"id": "main-db", "fields": {"title": "Name"}},
                "resource": {
                    "id": "resource-db",
                    "fields": {
                        "relation": "Batch",
                        "order": "Order",
                        "text": "Text",
                        "media": "Media",
                    },
                },
            },
        },
    }


class RecordingDocumentClient(DocumentClient):
    """
    Fake document database.

    Every call is recorded. Scripted responses are consumed in order: an
    exception instance is raised, a string is returned as the external id.
    Without a script, ids "page-1", "page-2", ... are handed out.
    """

    def __init__(self):
        self.calls: List[Tuple[OutboxKind, Document]] = []
        self.delay: float = 0.0
        self._script: Deque[Any] = deque()
        self._counter = 0

    @property
    def name(self) -> str:
        return "recording"

    def script(self, *responses):
        self._script.extend(responses)

    async def create_or_update_document(self, kind: OutboxKind, document: Document) -> str:
        self.calls.append((kind, document))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._script:
            response = self._script.popleft()
            if isinstance(response, BaseException):
                raise response
            return response
        self._counter += 1
        return f"page-{self._counter}"


@pytest.fixture
def settings():
    return parse_config(make_config())


@pytest.fixture
async def db():
    adapter = DatabaseAdapter(DatabaseConfig(sqlite_path=":memory:"))
    await adapter.connect()
    await apply_migrations(adapter)
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def queue(db):
    return OutboxQueue(db, base_backoff_seconds=5, max_backoff_seconds=60, lease_seconds=300)


@pytest.fixture
def engine(db, queue):
    return BatchWorkflowEngine(db, queue)


@pytest.fixture
def dlq(db, queue):
    return DLQManager(db, queue)


@pytest.fixture
def document_client():
    return RecordingDocumentClient()


@pytest.fixture
def worker(db, queue, dlq, document_client):
    return DeliveryWorker(
        document_client,
        db=db,
        queue=queue,
        dlq=dlq,
        poll_interval=0.01,
        delivery_timeout=1.0,
    )


@pytest.fixture
async def user_id(engine):
    return await engine.get_or_create_user(1001, username="alice", display_name="Alice")


@pytest.fixture
def config_factory():
    """Build a raw config mapping with app-section overrides."""
    return make_config
