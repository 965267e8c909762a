"""
Global Error Handlers

Batch lifecycle errors reach ingestion as 4xx responses in the shared
error envelope; anything unexpected becomes an opaque 500.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ....core.errors import (
    ConfigError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    RelayError,
)
from ..responses import ErrorBody, ErrorDetail
from .trace import get_request_trace_id

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ConflictError: 409,
    InvalidStateError: 409,
    NotFoundError: 404,
    ConfigError: 500,
}


def get_status_code(exc: RelayError) -> int:
    for exc_type, status in STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return status
    return 500


def _error_response(status_code: int, body: ErrorBody) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": body.model_dump(mode="json")})


def register_error_handlers(app: FastAPI):
    """Install handlers for RelayError, request validation and the catch-all."""

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        trace_id = get_request_trace_id(request)
        logger.warning(
            f"{request.method} {request.url.path} -> {exc.code}: {exc.message}",
            extra={"trace_id": trace_id, "error_code": exc.code},
        )
        return _error_response(
            get_status_code(exc),
            ErrorBody(code=exc.code, message=exc.message, trace_id=trace_id),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        trace_id = get_request_trace_id(request)
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in error["loc"]),
                message=error["msg"],
                code=error["type"],
            )
            for error in exc.errors()
        ]
        logger.warning(
            f"{request.method} {request.url.path} -> invalid request ({len(details)} field(s))",
            extra={"trace_id": trace_id},
        )
        return _error_response(
            422,
            ErrorBody(
                code="validation_error",
                message="Request validation failed",
                details=details,
                trace_id=trace_id,
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        trace_id = get_request_trace_id(request)
        logger.error(
            f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}",
            exc_info=exc,
            extra={"trace_id": trace_id},
        )
        return _error_response(500, ErrorBody.internal_error(trace_id=trace_id))
