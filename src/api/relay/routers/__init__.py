"""Relay API routers."""

from .admin import router as admin_router
from .batches import router as batches_router

__all__ = ["admin_router", "batches_router"]
