"""
Notion Document Client

Creates one Notion page per batch (main database) and one per resource
(resource database, related to the batch page when there is one).

Media goes into the resource page's files property. A public URL is linked
as an external file; otherwise the captured file on disk is uploaded
through /v1/file_uploads first. Videos also get their generated thumbnail
({data_dir}/media/thumbs/{stem}.jpg), attached ahead of the video.

Failure classification:
    transport errors, timeouts, 401/403, 409, 429, 5xx  -> RetryableDeliveryError
    400, 404, 413, 422 and any other 4xx               -> FatalDeliveryError
    2xx without a page id                              -> RetryableDeliveryError
"""

import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..batches.models import ResourceKind
from ..config import NotionSettings
from ..errors import FatalDeliveryError, RetryableDeliveryError
from ..outbox.models import OutboxKind
from .base import DocumentClient
from .models import BatchDocument, Document, ResourceDocument

logger = logging.getLogger(__name__)

USER_AGENT = "chat-relay/0.1"
DEFAULT_TIMEOUT_SECONDS = 30.0

# Retried although they are 4xx: credentials can be fixed and conflicts are transient.
RETRYABLE_STATUS = frozenset({401, 403, 409, 429})


def sanitize_media_url(raw: Optional[str]) -> Optional[str]:
    """Return a URL Notion can fetch, or None (local paths, bot API links)."""
    if raw is None:
        return None
    url = raw.strip()
    if not url:
        return None
    if not url.startswith(("http://", "https://")):
        return None
    if "api.telegram.org" in url:
        return None
    return url


def content_type_for(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def thumbnail_path_for(video_path: Path) -> Optional[Path]:
    """Where the thumbnail of a video stored under a `media` directory lives."""
    for parent in video_path.parents:
        if parent.name == "media":
            return parent / "thumbs" / f"{video_path.stem}.jpg"
    return None


def local_media_files(document: ResourceDocument) -> List[Path]:
    """Files to upload for a resource, in attachment order. Empty when none exist."""
    if document.kind == ResourceKind.TEXT or not document.local_path:
        return []
    path = Path(document.local_path)
    if not path.is_file():
        return []

    files = []
    if document.kind == ResourceKind.VIDEO:
        thumb = thumbnail_path_for(path)
        if thumb is not None and thumb.is_file():
            files.append(thumb)
    files.append(path)
    return files


def _text(content: str) -> list:
    return [{"text": {"content": content}}]


def build_main_page_request(settings: NotionSettings, title: str) -> Dict[str, Any]:
    """Create-page body for a batch."""
    main = settings.databases.main
    return {
        "parent": {"database_id": main.id},
        "properties": {
            main.fields.title: {"title": _text(title)},
        },
    }


def build_resource_page_request(
    settings: NotionSettings,
    order: int,
    parent_page_id: Optional[str] = None,
    text: Optional[str] = None,
    media_name: Optional[str] = None,
    media_url: Optional[str] = None,
    uploads: Optional[List[Tuple[str, str]]] = None,
) -> Dict[str, Any]:
    """
    Create-page body for a resource. Optional properties are omitted when empty.

    `uploads` holds (file name, file upload id) pairs and takes precedence
    over `media_url`.
    """
    resource = settings.databases.resource
    fields = resource.fields
    properties: Dict[str, Any] = {}

    if parent_page_id:
        properties[fields.relation] = {"relation": [{"id": parent_page_id}]}

    properties[fields.order] = {"title": _text(f"#{order}")}

    if text:
        properties[fields.text] = {"rich_text": _text(text)}

    url = sanitize_media_url(media_url)
    if uploads:
        properties[fields.media] = {
            "files": [
                {"name": name, "type": "file_upload", "file_upload": {"id": upload_id}}
                for name, upload_id in uploads
            ]
        }
    elif url:
        properties[fields.media] = {
            "files": [
                {
                    "name": media_name or url,
                    "type": "external",
                    "external": {"url": url},
                }
            ]
        }

    return {
        "parent": {"database_id": resource.id},
        "properties": properties,
    }


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class NotionDocumentClient(DocumentClient):
    """
    Notion REST client (POST /v1/pages, POST /v1/file_uploads).

    Usage:
        client = NotionDocumentClient(settings.notion)
        page_id = await client.create_or_update_document(kind, document)
        await client.aclose()
    """

    def __init__(
        self,
        settings: NotionSettings,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        # Content-Type is left to httpx: JSON for pages, multipart for file content
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {settings.token}",
                "Notion-Version": settings.version,
                "User-Agent": USER_AGENT,
            },
        )

    @property
    def name(self) -> str:
        return "notion"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_or_update_document(self, kind: OutboxKind, document: Document) -> str:
        if kind == OutboxKind.CREATE_BATCH_DOCUMENT:
            if not isinstance(document, BatchDocument):
                raise FatalDeliveryError(f"{kind.value} needs a BatchDocument")
            body = build_main_page_request(self.settings, document.title)
            logger.info(f"Creating main Notion page for batch {document.batch_id}")
        elif kind == OutboxKind.CREATE_RESOURCE_DOCUMENT:
            if not isinstance(document, ResourceDocument):
                raise FatalDeliveryError(f"{kind.value} needs a ResourceDocument")
            uploads = None
            if sanitize_media_url(document.media_url) is None:
                uploads = []
                for path in local_media_files(document):
                    uploads.append((path.name, await self.upload_file(path)))
            body = build_resource_page_request(
                self.settings,
                order=document.order,
                parent_page_id=document.parent_external_id,
                text=document.text,
                media_name=document.media_name,
                media_url=document.media_url,
                uploads=uploads,
            )
            logger.info(
                f"Creating resource Notion page for resource {document.resource_id} "
                f"(order={document.order}, parent={document.parent_external_id}, "
                f"uploads={len(uploads or [])})"
            )
        else:
            raise FatalDeliveryError(f"Unsupported outbox kind: {kind}")

        return await self._create_page(body)

    async def upload_file(self, path: Path) -> str:
        """
        Upload a local file in single-part mode.

        Returns:
            The file upload id, referenced from a files property
        """
        try:
            with open(path, "rb") as f:
                content = f.read()
        except OSError as e:
            raise RetryableDeliveryError(f"Cannot read media file {path}: {e}") from e

        content_type = content_type_for(path)
        created = await self._post(
            "v1/file_uploads",
            json={"name": path.name, "content_type": content_type, "mode": "single_part"},
        )
        upload_id = created.get("id")
        if not upload_id:
            raise RetryableDeliveryError("Notion file upload response has no id")

        upload_url = created.get("upload_url") or f"v1/file_uploads/{upload_id}/send"
        await self._post(upload_url, files={"file": (path.name, content, content_type)})

        logger.info(f"Uploaded {path.name} ({len(content)} bytes) as Notion file {upload_id}")
        return upload_id

    async def _create_page(self, body: Dict[str, Any]) -> str:
        data = await self._post("v1/pages", json=body)
        page_id = data.get("id")
        if not page_id:
            raise RetryableDeliveryError("Notion response has no page id")

        logger.info(f"Created Notion page {page_id}")
        return page_id

    async def _post(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise RetryableDeliveryError(f"Notion request timed out: {e}") from e
        except httpx.RequestError as e:
            raise RetryableDeliveryError(f"Notion request failed: {e}") from e

        status = response.status_code
        if status == 429:
            logger.warning(f"Rate limited by Notion: {response.text}")
            raise RetryableDeliveryError(
                f"Notion rate limit (429): {response.text}",
                retry_after=_retry_after(response),
            )
        if status in RETRYABLE_STATUS or status >= 500:
            logger.warning(f"Notion API error - Status: {status}, Body: {response.text}")
            raise RetryableDeliveryError(
                f"Notion error {status}: {response.text}",
                retry_after=_retry_after(response),
            )
        if status >= 400:
            logger.error(f"Notion rejected request - Status: {status}, Body: {response.text}")
            raise FatalDeliveryError(f"Notion error {status}: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise RetryableDeliveryError(f"Invalid Notion response JSON: {e}") from e
        return data if isinstance(data, dict) else {}
