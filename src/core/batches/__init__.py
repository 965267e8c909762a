"""
Batch Management

Batch state machine, current-batch pointer and resource capture.
"""

from .models import Batch, BatchState, Resource, ResourceKind, ResourcePayload
from .workflow import (
    BATCH_TRANSITIONS,
    BatchTransition,
    BatchWorkflowEngine,
)

__all__ = [
    "Batch",
    "BatchState",
    "Resource",
    "ResourceKind",
    "ResourcePayload",
    "BATCH_TRANSITIONS",
    "BatchTransition",
    "BatchWorkflowEngine",
]
