"""
Outbox Pattern Implementation

Durable, ordered delivery of committed batches and resources to the
external document database.

Usage:
    from src.core.outbox import OutboxQueue, DeliveryWorker

    async with db.transaction() as conn:
        ...  # business writes
        await queue.enqueue(OutboxKind.CREATE_BATCH_DOCUMENT, batch_id, user_id, conn=conn)

    worker = DeliveryWorker(client, db=db)
    await worker.start()
"""

from .models import OutboxKind, OutboxTask
from .queue import OutboxQueue, compute_backoff
from .cursor import ProgressCursor
from .processor import (
    DeliveryOutcome,
    DeliveryWorker,
    start_delivery_worker,
    stop_delivery_worker,
    get_delivery_worker,
)
from .dlq import DLQManager, DLQEntry, DLQAction

__all__ = [
    "OutboxKind",
    "OutboxTask",
    "OutboxQueue",
    "compute_backoff",
    "ProgressCursor",
    "DeliveryOutcome",
    "DeliveryWorker",
    "start_delivery_worker",
    "stop_delivery_worker",
    "get_delivery_worker",
    "DLQManager",
    "DLQEntry",
    "DLQAction",
]
