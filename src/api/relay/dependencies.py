"""FastAPI dependencies resolving the services installed on app.state."""

from fastapi import Request

from ...core.batches.workflow import BatchWorkflowEngine
from ...core.outbox.dlq import DLQManager
from ...core.outbox.queue import OutboxQueue


def get_engine(request: Request) -> BatchWorkflowEngine:
    return request.app.state.engine


def get_queue(request: Request) -> OutboxQueue:
    return request.app.state.queue


def get_dlq(request: Request) -> DLQManager:
    return request.app.state.dlq
