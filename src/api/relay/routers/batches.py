"""
Ingestion API

Endpoints the chat ingestion pipeline calls to register users and drive
the batch lifecycle. Lifecycle errors come back synchronously (409/404).
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ....core.batches.models import ResourcePayload
from ....core.batches.workflow import BatchTransition, BatchWorkflowEngine
from ..dependencies import get_engine

router = APIRouter(prefix="/api", tags=["batches"])


class UserCreate(BaseModel):
    platform_user_id: int
    username: Optional[str] = None
    display_name: Optional[str] = None


class CommitRequest(BaseModel):
    title: Optional[str] = None


def _transition_response(transition: BatchTransition) -> Dict[str, Any]:
    return {
        "batch_id": transition.batch_id,
        "from_state": transition.from_state,
        "to_state": transition.to_state,
        "title": transition.title,
        "enqueued_task_ids": transition.enqueued_task_ids,
        "timestamp": transition.timestamp.isoformat(),
    }


@router.post("/users")
async def create_user(body: UserCreate, engine: BatchWorkflowEngine = Depends(get_engine)):
    """Get or create the user for a chat account."""
    user_id = await engine.get_or_create_user(
        body.platform_user_id,
        username=body.username,
        display_name=body.display_name,
    )
    return {"user_id": user_id}


@router.post("/users/{user_id}/batches", status_code=201)
async def open_batch(user_id: int, engine: BatchWorkflowEngine = Depends(get_engine)):
    """Open a batch; 409 if the user already has one open."""
    batch_id = await engine.open_batch(user_id)
    return {"batch_id": batch_id, "state": "open"}


@router.post("/users/{user_id}/resources", status_code=201)
async def record_resource(
    user_id: int,
    payload: ResourcePayload,
    engine: BatchWorkflowEngine = Depends(get_engine),
):
    """Store a message for the user's open batch, or standalone."""
    resource_id = await engine.record_resource(user_id, payload)
    return {"resource_id": resource_id}


@router.post("/batches/{batch_id}/resources", status_code=201)
async def attach_resource(
    batch_id: int,
    payload: ResourcePayload,
    engine: BatchWorkflowEngine = Depends(get_engine),
):
    resource_id = await engine.attach_resource(batch_id, payload)
    return {"resource_id": resource_id}


@router.post("/batches/{batch_id}/commit")
async def commit_batch(
    batch_id: int,
    body: Optional[CommitRequest] = None,
    engine: BatchWorkflowEngine = Depends(get_engine),
):
    transition = await engine.commit(batch_id, title=body.title if body else None)
    return _transition_response(transition)


@router.post("/batches/{batch_id}/rollback")
async def rollback_batch(batch_id: int, engine: BatchWorkflowEngine = Depends(get_engine)):
    transition = await engine.rollback(batch_id)
    return _transition_response(transition)


@router.get("/batches/{batch_id}")
async def get_batch(batch_id: int, engine: BatchWorkflowEngine = Depends(get_engine)):
    """Batch with its resources in sequence order."""
    batch = await engine.get_batch(batch_id)
    resources = await engine.list_resources(batch_id)
    return {
        **batch.model_dump(mode="json"),
        "resources": [r.model_dump(mode="json") for r in resources],
    }
