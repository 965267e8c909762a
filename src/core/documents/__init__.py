"""
External Document Clients

Mirror batches and resources into an external document database.
"""

from .base import DocumentClient
from .models import BatchDocument, Document, ResourceDocument
from .notion import NotionDocumentClient, sanitize_media_url

__all__ = [
    "DocumentClient",
    "BatchDocument",
    "Document",
    "ResourceDocument",
    "NotionDocumentClient",
    "sanitize_media_url",
]
