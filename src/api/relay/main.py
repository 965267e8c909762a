#!/usr/bin/env python3
"""
Chat Relay API
==============

FastAPI application for batch ingestion and outbox operations. Runs the
delivery worker in-process unless RELAY_WORKER_ENABLED=false.

Usage:
    uvicorn src.api.relay.main:app --host 0.0.0.0 --port 9300

Environment Variables:
    RELAY_CONFIG: YAML config file (default: config.yaml)
    RELAY_WORKER_ENABLED: Run the delivery worker in this process (default: true)
    API_HOST / API_PORT: Bind address when run as a script
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ...core.batches.workflow import BatchWorkflowEngine
from ...core.config import Settings, load_config
from ...core.database.adapter import DatabaseAdapter, DatabaseConfig, set_database
from ...core.database.migrate import apply_migrations
from ...core.documents.base import DocumentClient
from ...core.outbox.dlq import DLQManager
from ...core.outbox.lifecycle import outbox_lifespan
from ...core.outbox.queue import OutboxQueue
from ..shared.middleware import TraceMiddleware, register_error_handlers
from ..shared.routers.health import router as health_router
from .routers.admin import router as admin_router
from .routers.batches import router as batches_router

logger = logging.getLogger(__name__)

API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "9300"))


def install_services(app: FastAPI, settings: Optional[Settings], db: DatabaseAdapter) -> None:
    """Bind the store and the services built on it to app.state."""
    app_settings = settings.app if settings else None
    queue = OutboxQueue(
        db,
        base_backoff_seconds=app_settings.base_backoff_seconds,
        max_backoff_seconds=app_settings.max_backoff_seconds,
        lease_seconds=app_settings.lease_seconds,
    ) if app_settings else OutboxQueue(db)

    app.state.settings = settings
    app.state.db = db
    app.state.queue = queue
    app.state.engine = BatchWorkflowEngine(db, queue)
    app.state.dlq = DLQManager(db, queue)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the store, apply migrations and run the delivery worker."""
    settings: Optional[Settings] = app.state.settings
    owns_db = app.state.db is None

    if owns_db:
        if settings is None:
            settings = load_config()
        settings.ensure_dirs()
        db = DatabaseAdapter(DatabaseConfig(sqlite_path=settings.app.database_path))
        await db.connect()
        await apply_migrations(db)
        set_database(db)
        install_services(app, settings, db)
        logger.info("Relay API started")

    try:
        if settings is None:
            yield
        else:
            async with outbox_lifespan(settings, app.state.db, app.state.document_client):
                yield
    finally:
        if owns_db:
            await app.state.db.disconnect()
            set_database(None)
            logger.info("Relay API stopped")


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[DatabaseAdapter] = None,
    document_client: Optional[DocumentClient] = None,
) -> FastAPI:
    """
    Build the API application.

    Passing `db` binds the services immediately (tests); otherwise the
    lifespan opens the configured store on startup.
    """
    app = FastAPI(
        title="Chat Relay API",
        description="Batch ingestion and reliable outbox delivery to a document database",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.db = None
    app.state.document_client = document_client
    if db is not None:
        install_services(app, settings, db)

    app.add_middleware(TraceMiddleware)
    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(batches_router)
    app.include_router(admin_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
