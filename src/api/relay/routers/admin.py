"""
Admin/Operator API

Outbox visibility and dead-letter management.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ....core.errors import NotFoundError
from ....core.outbox.dlq import DLQManager
from ....core.outbox.queue import OutboxQueue
from ..dependencies import get_dlq, get_queue

router = APIRouter(prefix="/api/admin", tags=["admin"])


class PurgeRequest(BaseModel):
    """Request to purge DLQ entries."""
    days: int = 30


# DLQ Management Endpoints

@router.get("/dlq")
async def list_dlq_entries(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user_id: Optional[int] = None,
    manager: DLQManager = Depends(get_dlq),
):
    """List Dead Letter Queue entries."""
    entries = await manager.get_entries(limit=limit, offset=offset, user_id=user_id)
    total = await manager.get_count(user_id)

    return {
        "entries": [e.to_dict() for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset
    }


@router.get("/dlq/stats")
async def dlq_stats(manager: DLQManager = Depends(get_dlq)):
    """Get DLQ statistics."""
    return await manager.get_stats()


@router.post("/dlq/{entry_id}/retry")
async def retry_dlq_entry(entry_id: int, manager: DLQManager = Depends(get_dlq)):
    """Re-enqueue a specific DLQ entry."""
    task_id = await manager.retry_entry(entry_id)
    return {"status": "queued_for_retry", "entry_id": entry_id, "outbox_id": task_id}


@router.delete("/dlq/{entry_id}")
async def purge_dlq_entry(entry_id: int, manager: DLQManager = Depends(get_dlq)):
    """Permanently delete a DLQ entry."""
    if not await manager.purge_entry(entry_id):
        raise NotFoundError("Dead letter", entry_id)

    return {"status": "purged", "entry_id": entry_id}


@router.post("/dlq/purge")
async def purge_old_dlq(body: PurgeRequest, manager: DLQManager = Depends(get_dlq)):
    """Purge DLQ entries older than specified days."""
    count = await manager.purge_old(days=body.days)
    return {"status": "purged", "older_than_days": body.days, "count": count}


# Outbox Status Endpoints

@router.get("/outbox/stats")
async def outbox_stats(queue: OutboxQueue = Depends(get_queue)):
    """Get outbox queue statistics."""
    return await queue.get_stats()
