"""
API Error Envelope

Every error leaves the API in the same shape:

    {"error": {"code": "conflict", "message": "...", "details": [...], "trace_id": "...", "timestamp": "..."}}
"""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ...core.timeutil import utcnow


class ErrorDetail(BaseModel):
    """One failing request field."""

    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def internal_error(cls, trace_id: Optional[str] = None) -> "ErrorBody":
        """Generic 500 body; the real cause only goes to the log."""
        return cls(
            code="internal_error",
            message="An internal error occurred",
            trace_id=trace_id or str(uuid4()),
        )
