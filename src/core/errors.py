"""
Relay Exception Classes

Errors raised by the batch lifecycle (returned synchronously to ingestion)
and by the delivery path (confined to the outbox worker).
"""

from typing import Optional


class RelayError(Exception):
    """
    Base exception for relay errors.

    The API error handler maps subclasses to HTTP responses using `code`.
    """

    code = "relay_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConflictError(RelayError):
    """A second batch was opened while the user still has one open."""

    code = "conflict"


class InvalidStateError(RelayError):
    """
    A transition or attach was attempted on a batch that is not open.

    Always a caller bug or a race; never retried.
    """

    code = "invalid_state"


class NotFoundError(RelayError):
    """Referenced entity does not exist."""

    code = "not_found"

    def __init__(self, resource: str, resource_id: Optional[object] = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ConfigError(RelayError):
    """Invalid or missing configuration."""

    code = "config_error"


class DeliveryError(RelayError):
    """Base for failures reported by the external document client."""

    code = "delivery_error"


class RetryableDeliveryError(DeliveryError):
    """
    Transient external failure (timeout, rate limit, 5xx).

    Args:
        message: Human readable reason
        retry_after: Seconds the remote side asked us to wait, if any
    """

    code = "delivery_retryable"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalDeliveryError(DeliveryError):
    """The external system permanently rejected the payload."""

    code = "delivery_fatal"
