"""
Shared API Utilities

Error responses, middleware and health endpoints.
"""

from .responses import ErrorDetail, ErrorBody
from .middleware import (
    register_error_handlers,
    get_status_code,
    TraceMiddleware,
    get_trace_id,
)

__all__ = [
    "ErrorDetail",
    "ErrorBody",
    "register_error_handlers",
    "get_status_code",
    "TraceMiddleware",
    "get_trace_id",
]
