"""
DocumentClient Abstract Base Class

Interface to the external document database. Implementations must raise
RetryableDeliveryError for transient failures and FatalDeliveryError for
permanent rejections; anything else is treated as a worker bug.
"""

from abc import ABC, abstractmethod

from ..outbox.models import OutboxKind
from .models import Document


class DocumentClient(ABC):
    """Abstract base class for document database clients."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Client name used in logs and span attributes."""
        pass

    @abstractmethod
    async def create_or_update_document(self, kind: OutboxKind, document: Document) -> str:
        """
        Create the external record for a batch or resource.

        Returns:
            The external id assigned by the document database

        Raises:
            RetryableDeliveryError: Transient failure, try again later
            FatalDeliveryError: The payload will never be accepted
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None
