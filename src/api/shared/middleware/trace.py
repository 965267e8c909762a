"""
Request Trace IDs

Each request carries an X-Trace-ID, taken from the caller when present and
minted otherwise. The same id appears in log lines, error bodies and the
response header.
"""

import contextvars
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

TRACE_HEADER = "X-Trace-ID"

_request_trace_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_trace_id", default="")


def get_trace_id() -> str:
    """Trace id of the request being served; a fresh one outside a request."""
    return _request_trace_id.get() or str(uuid4())


def get_request_trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or get_trace_id()


class TraceMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid4())
        request.state.trace_id = trace_id
        token = _request_trace_id.set(trace_id)
        try:
            response = await call_next(request)
        finally:
            _request_trace_id.reset(token)
        response.headers[TRACE_HEADER] = trace_id
        return response
