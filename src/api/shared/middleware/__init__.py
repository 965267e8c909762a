"""
Shared API Middleware

- Error handling with standardized responses
- Trace ID propagation for log correlation
"""

from .error_handler import register_error_handlers, get_status_code
from .trace import TraceMiddleware, get_trace_id, get_request_trace_id

__all__ = [
    "register_error_handlers",
    "get_status_code",
    "TraceMiddleware",
    "get_trace_id",
    "get_request_trace_id",
]
