"""
Tests for the Notion document client.

Requests are served by httpx.MockTransport; no network access.
"""

import json

import httpx
import pytest

from src.core.batches.models import ResourceKind
from src.core.documents.models import BatchDocument, ResourceDocument
from src.core.documents.notion import (
    NotionDocumentClient,
    build_main_page_request,
    build_resource_page_request,
    content_type_for,
    sanitize_media_url,
    thumbnail_path_for,
)
from src.core.errors import FatalDeliveryError, RetryableDeliveryError
from src.core.outbox.models import OutboxKind


def make_client(settings, handler):
    return NotionDocumentClient(settings.notion, transport=httpx.MockTransport(handler))


def ok(page_id="page-abc"):
    def handler(request):
        return httpx.Response(200, json={"object": "page", "id": page_id})
    return handler


class TestSanitizeMediaUrl:
    """Only publicly fetchable URLs are sent."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("https://cdn.example.com/a.jpg", "https://cdn.example.com/a.jpg"),
            ("  http://example.com/v.mp4 ", "http://example.com/v.mp4"),
            ("/var/data/photo.jpg", None),
            ("file:///tmp/photo.jpg", None),
            ("https://api.telegram.org/file/bot123/photo.jpg", None),
            ("", None),
            (None, None),
        ],
    )
    def test_sanitize(self, raw, expected):
        assert sanitize_media_url(raw) == expected


class TestRequestBuilders:
    """Test page bodies."""

    def test_main_page(self, settings):
        body = build_main_page_request(settings.notion, "Trip photos")

        assert body["parent"] == {"database_id": "main-db"}
        assert body["properties"]["Name"]["title"][0]["text"]["content"] == "Trip photos"

    def test_resource_page_full(self, settings):
        body = build_resource_page_request(
            settings.notion,
            order=3,
            parent_page_id="batch-page",
            text="hello",
            media_name="a.jpg",
            media_url="https://cdn.example.com/a.jpg",
        )
        props = body["properties"]

        assert body["parent"] == {"database_id": "resource-db"}
        assert props["Batch"] == {"relation": [{"id": "batch-page"}]}
        assert props["Order"]["title"][0]["text"]["content"] == "#3"
        assert props["Text"]["rich_text"][0]["text"]["content"] == "hello"
        assert props["Media"]["files"][0] == {
            "name": "a.jpg",
            "type": "external",
            "external": {"url": "https://cdn.example.com/a.jpg"},
        }

    def test_resource_page_minimal(self, settings):
        """Empty optional properties are omitted."""
        body = build_resource_page_request(settings.notion, order=1, media_url="/local/file.jpg")

        assert set(body["properties"]) == {"Order"}


class TestNotionDocumentClient:
    """Test HTTP calls and failure classification."""

    @pytest.mark.asyncio
    async def test_create_batch_page(self, settings):
        """Batch documents go to the main database with auth headers."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "page-1"})

        client = make_client(settings, handler)
        try:
            page_id = await client.create_or_update_document(
                OutboxKind.CREATE_BATCH_DOCUMENT, BatchDocument(batch_id=1, title="Hello")
            )
        finally:
            await client.aclose()

        assert page_id == "page-1"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/pages"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.headers["Notion-Version"] == "2022-06-28"
        body = json.loads(request.content)
        assert body["parent"]["database_id"] == "main-db"

    @pytest.mark.asyncio
    async def test_create_resource_page(self, settings):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "page-2"})

        client = make_client(settings, handler)
        document = ResourceDocument(
            resource_id=7,
            kind=ResourceKind.TEXT,
            order=2,
            parent_external_id="page-1",
            text="note",
        )
        try:
            page_id = await client.create_or_update_document(
                OutboxKind.CREATE_RESOURCE_DOCUMENT, document
            )
        finally:
            await client.aclose()

        assert page_id == "page-2"
        assert seen[0]["parent"]["database_id"] == "resource-db"
        assert seen[0]["properties"]["Batch"]["relation"] == [{"id": "page-1"}]

    @pytest.mark.asyncio
    async def test_mismatched_document_is_fatal(self, settings):
        client = make_client(settings, ok())
        try:
            with pytest.raises(FatalDeliveryError):
                await client.create_or_update_document(
                    OutboxKind.CREATE_RESOURCE_DOCUMENT, BatchDocument(batch_id=1, title="x")
                )
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, settings):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"}, json={"code": "rate_limited"})

        client = make_client(settings, handler)
        try:
            with pytest.raises(RetryableDeliveryError) as exc_info:
                await client.create_or_update_document(
                    OutboxKind.CREATE_BATCH_DOCUMENT, BatchDocument(batch_id=1, title="x")
                )
        finally:
            await client.aclose()

        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 409, 500, 502, 503])
    async def test_retryable_statuses(self, settings, status):
        client = make_client(settings, lambda request: httpx.Response(status, text="nope"))
        try:
            with pytest.raises(RetryableDeliveryError):
                await client.create_or_update_document(
                    OutboxKind.CREATE_BATCH_DOCUMENT, BatchDocument(batch_id=1, title="x")
                )
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404, 413, 422])
    async def test_fatal_statuses(self, settings, status):
        client = make_client(settings, lambda request: httpx.Response(status, text="bad"))
        try:
            with pytest.raises(FatalDeliveryError):
                await client.create_or_update_document(
                    OutboxKind.CREATE_BATCH_DOCUMENT, BatchDocument(batch_id=1, title="x")
                )
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(settings, handler)
        try:
            with pytest.raises(RetryableDeliveryError, match="Notion request failed"):
                await client.create_or_update_document(
                    OutboxKind.CREATE_BATCH_DOCUMENT, BatchDocument(batch_id=1, title="x")
                )
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_type", [httpx.DecodingError, httpx.TooManyRedirects, httpx.ReadTimeout])
    async def test_request_errors_are_retryable(self, settings, error_type):
        def handler(request):
            raise error_type("broken response", request=request)

        client = make_client(settings, handler)
        try:
            with pytest.raises(RetryableDeliveryError):
                await client.create_or_update_document(
                    OutboxKind.CREATE_BATCH_DOCUMENT, BatchDocument(batch_id=1, title="x")
                )
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_page_id_is_retryable(self, settings):
        client = make_client(settings, lambda request: httpx.Response(200, json={"object": "page"}))
        try:
            with pytest.raises(RetryableDeliveryError, match="no page id"):
                await client.create_or_update_document(
                    OutboxKind.CREATE_BATCH_DOCUMENT, BatchDocument(batch_id=1, title="x")
                )
        finally:
            await client.aclose()


class NotionStub:
    """Serves file uploads and page creation, remembering what it saw."""

    def __init__(self, upload_status=200):
        self.upload_status = upload_status
        self.created_uploads = []
        self.sent_files = []
        self.pages = []

    def __call__(self, request):
        path = request.url.path
        if path == "/v1/file_uploads":
            body = json.loads(request.content)
            upload_id = f"upload-{len(self.created_uploads) + 1}"
            self.created_uploads.append(body)
            return httpx.Response(
                200,
                json={
                    "id": upload_id,
                    "status": "pending",
                    "upload_url": f"https://api.notion.com/v1/file_uploads/{upload_id}/send",
                },
            )
        if path.endswith("/send"):
            self.sent_files.append((path, request.headers["content-type"], request.content))
            return httpx.Response(self.upload_status, json={"object": "file_upload", "status": "uploaded"})
        if path == "/v1/pages":
            self.pages.append(json.loads(request.content))
            return httpx.Response(200, json={"id": f"page-{len(self.pages)}"})
        return httpx.Response(404, json={"code": "object_not_found"})


def media_document(path, kind=ResourceKind.PHOTO, media_url=None):
    return ResourceDocument(
        resource_id=9,
        kind=kind,
        order=1,
        text="caption",
        media_url=media_url,
        local_path=str(path),
    )


class TestLocalMedia:
    """Files on disk are uploaded when no public URL is available."""

    def test_thumbnail_path(self, tmp_path):
        video = tmp_path / "media" / "videos" / "clip.mp4"
        assert thumbnail_path_for(video) == tmp_path / "media" / "thumbs" / "clip.jpg"
        assert thumbnail_path_for(tmp_path / "elsewhere" / "clip.mp4") is None

    def test_content_type(self, tmp_path):
        assert content_type_for(tmp_path / "a.JPG") == "image/jpeg"
        assert content_type_for(tmp_path / "a.mp4") == "video/mp4"
        assert content_type_for(tmp_path / "a.unknownext") == "application/octet-stream"

    def test_resource_page_with_uploads(self, settings):
        body = build_resource_page_request(
            settings.notion,
            order=1,
            media_url="https://cdn.example.com/ignored.jpg",
            uploads=[("a.jpg", "upload-1")],
        )

        assert body["properties"]["Media"]["files"] == [
            {"name": "a.jpg", "type": "file_upload", "file_upload": {"id": "upload-1"}}
        ]

    @pytest.mark.asyncio
    async def test_photo_is_uploaded(self, settings, tmp_path):
        photo = tmp_path / "media" / "photos" / "photo.jpg"
        photo.parent.mkdir(parents=True)
        photo.write_bytes(b"jpeg-bytes")
        stub = NotionStub()
        client = make_client(settings, stub)
        try:
            page_id = await client.create_or_update_document(
                OutboxKind.CREATE_RESOURCE_DOCUMENT, media_document(photo)
            )
        finally:
            await client.aclose()

        assert page_id == "page-1"
        assert stub.created_uploads == [
            {"name": "photo.jpg", "content_type": "image/jpeg", "mode": "single_part"}
        ]
        (path, content_type, content), = stub.sent_files
        assert path == "/v1/file_uploads/upload-1/send"
        assert content_type.startswith("multipart/form-data")
        assert b"jpeg-bytes" in content
        assert stub.pages[0]["properties"]["Media"]["files"] == [
            {"name": "photo.jpg", "type": "file_upload", "file_upload": {"id": "upload-1"}}
        ]
        assert stub.pages[0]["properties"]["Text"]["rich_text"][0]["text"]["content"] == "caption"

    @pytest.mark.asyncio
    async def test_video_thumbnail_attached_first(self, settings, tmp_path):
        video = tmp_path / "media" / "videos" / "clip.mp4"
        thumb = tmp_path / "media" / "thumbs" / "clip.jpg"
        video.parent.mkdir(parents=True)
        thumb.parent.mkdir(parents=True)
        video.write_bytes(b"mp4-bytes")
        thumb.write_bytes(b"thumb-bytes")
        stub = NotionStub()
        client = make_client(settings, stub)
        try:
            await client.create_or_update_document(
                OutboxKind.CREATE_RESOURCE_DOCUMENT, media_document(video, kind=ResourceKind.VIDEO)
            )
        finally:
            await client.aclose()

        assert [u["name"] for u in stub.created_uploads] == ["clip.jpg", "clip.mp4"]
        assert stub.created_uploads[1]["content_type"] == "video/mp4"
        assert stub.pages[0]["properties"]["Media"]["files"] == [
            {"name": "clip.jpg", "type": "file_upload", "file_upload": {"id": "upload-1"}},
            {"name": "clip.mp4", "type": "file_upload", "file_upload": {"id": "upload-2"}},
        ]

    @pytest.mark.asyncio
    async def test_video_without_thumbnail(self, settings, tmp_path):
        video = tmp_path / "media" / "videos" / "clip.mp4"
        video.parent.mkdir(parents=True)
        video.write_bytes(b"mp4-bytes")
        stub = NotionStub()
        client = make_client(settings, stub)
        try:
            await client.create_or_update_document(
                OutboxKind.CREATE_RESOURCE_DOCUMENT, media_document(video, kind=ResourceKind.VIDEO)
            )
        finally:
            await client.aclose()

        assert [u["name"] for u in stub.created_uploads] == ["clip.mp4"]

    @pytest.mark.asyncio
    async def test_public_url_is_linked_not_uploaded(self, settings, tmp_path):
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"jpeg-bytes")
        stub = NotionStub()
        client = make_client(settings, stub)
        try:
            await client.create_or_update_document(
                OutboxKind.CREATE_RESOURCE_DOCUMENT,
                media_document(photo, media_url="https://cdn.example.com/photo.jpg"),
            )
        finally:
            await client.aclose()

        assert stub.created_uploads == []
        assert stub.pages[0]["properties"]["Media"]["files"][0]["type"] == "external"

    @pytest.mark.asyncio
    async def test_missing_file_creates_page_without_media(self, settings, tmp_path):
        stub = NotionStub()
        client = make_client(settings, stub)
        try:
            await client.create_or_update_document(
                OutboxKind.CREATE_RESOURCE_DOCUMENT, media_document(tmp_path / "gone.jpg")
            )
        finally:
            await client.aclose()

        assert stub.created_uploads == []
        assert "Media" not in stub.pages[0]["properties"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_type", [(503, RetryableDeliveryError), (400, FatalDeliveryError)])
    async def test_failed_upload_is_classified(self, settings, tmp_path, status, error_type):
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"jpeg-bytes")
        stub = NotionStub(upload_status=status)
        client = make_client(settings, stub)
        try:
            with pytest.raises(error_type):
                await client.create_or_update_document(
                    OutboxKind.CREATE_RESOURCE_DOCUMENT, media_document(photo)
                )
        finally:
            await client.aclose()

        assert stub.pages == []
