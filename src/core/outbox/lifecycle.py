"""
Outbox Lifecycle Management

Integrates the delivery worker with the FastAPI application lifecycle.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from ..config import Settings
from ..database.adapter import DatabaseAdapter
from ..documents.base import DocumentClient
from ..documents.notion import NotionDocumentClient
from .processor import start_delivery_worker, stop_delivery_worker

logger = logging.getLogger(__name__)


def is_worker_enabled() -> bool:
    """
    Check if this instance should run the delivery worker.

    Exactly one worker may run per database; set RELAY_WORKER_ENABLED=false
    on API instances when the standalone runner is deployed.
    """
    return os.getenv("RELAY_WORKER_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def outbox_lifespan(
    settings: Settings,
    db: Optional[DatabaseAdapter] = None,
    client: Optional[DocumentClient] = None,
):
    """
    Lifespan context manager for the delivery worker.

    Usage in FastAPI:
        from src.core.outbox.lifecycle import outbox_lifespan

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan(settings, db):
                yield

        app = FastAPI(lifespan=lifespan)
    """
    if not is_worker_enabled():
        logger.info("Delivery worker disabled: RELAY_WORKER_ENABLED=false")
        yield None
        return

    owns_client = client is None
    if client is None:
        client = NotionDocumentClient(settings.notion, timeout=settings.app.delivery_timeout_seconds)

    logger.info("Starting delivery worker...")
    worker = await start_delivery_worker(settings, client, db)
    try:
        yield worker
    finally:
        logger.info("Stopping delivery worker...")
        await stop_delivery_worker()
        if owns_client:
            await client.aclose()
