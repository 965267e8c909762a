"""
Document Payloads

What the worker hands to a document client. Built from stored batch and
resource rows at delivery time.
"""

from typing import Optional, Union

from pydantic import BaseModel

from ..batches.models import ResourceKind


class BatchDocument(BaseModel):
    """Main page for a committed batch."""
    batch_id: int
    title: str


class ResourceDocument(BaseModel):
    """
    One resource page, optionally related to its batch's main page.

    `local_path` is the captured media file on disk; it is uploaded when no
    public `media_url` is available.
    """
    resource_id: int
    kind: ResourceKind
    order: int
    parent_external_id: Optional[str] = None
    text: Optional[str] = None
    media_name: Optional[str] = None
    media_url: Optional[str] = None
    local_path: Optional[str] = None


Document = Union[BatchDocument, ResourceDocument]
