"""Tests for the storage backend adapters."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from docvault.core.exceptions import BackendNotFoundError, BackendWriteError, StorageError
from docvault.schemas.documents import Document
from docvault.services.storage.base_adapter import build_external_key
from docvault.services.storage.local_adapter import LocalFilesystemAdapter
from docvault.services.storage.metadata_adapter import MetadataStoreAdapter
from docvault.services.storage.supabase_adapter import SupabaseStorageAdapter


@pytest.fixture
def document() -> Document:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Document(
        id="doc_1704067200000_abc_1234",
        name="bank statement (march).pdf",
        byte_size=5,
        mime_type="application/pdf",
        created_at=now,
        last_modified_at=now,
        owner_id="user-1",
        tags={"financial", "pdf"},
        transaction_id="tx-1",
        checksum="0" * 64,
    )


def mock_http_client(mock_client_class):
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    mock_client_class.return_value = mock_client
    return mock_client


def test_external_key_is_scoped_and_sanitized(document):
    key = build_external_key(document)

    assert key == "transactions/tx-1/doc_1704067200000_abc_1234/bank_statement__march_.pdf"


def test_external_key_falls_back_to_owner(document):
    document = document.model_copy(update={"transaction_id": None})

    assert build_external_key(document).startswith("owners/user-1/")


class TestSupabaseStorageAdapter:
    """Tests for the HTTP object storage backend."""

    @pytest.fixture
    def adapter(self) -> SupabaseStorageAdapter:
        return SupabaseStorageAdapter(
            url="https://project.supabase.co/",
            service_role_key="service-key",
            bucket="docs",
        )

    @pytest.mark.asyncio
    async def test_put_uploads_with_upsert(self, adapter, document):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.post.return_value = Mock(status_code=200, text="{}")

            result = await adapter.put(document, b"hello")

        args, kwargs = mock_client.post.call_args
        assert args[0] == (
            "https://project.supabase.co/storage/v1/object/docs/" + build_external_key(document)
        )
        assert kwargs["headers"]["x-upsert"] == "true"
        assert kwargs["headers"]["Authorization"] == "Bearer service-key"
        assert kwargs["content"] == b"hello"
        assert result.external_key == build_external_key(document)
        assert result.url == args[0]

    @pytest.mark.asyncio
    async def test_put_non_200_raises_backend_write_error(self, adapter, document):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.post.return_value = Mock(status_code=500, text="internal error")

            with pytest.raises(BackendWriteError) as exc_info:
                await adapter.put(document, b"hello")

        assert exc_info.value.backend_name == "primary"
        assert "internal error" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_put_timeout_raises_backend_write_error(self, adapter, document):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.post.side_effect = httpx.TimeoutException("Request timed out")

            with pytest.raises(BackendWriteError) as exc_info:
                await adapter.put(document, b"hello")

        assert "timed out" in str(exc_info.value).lower()
        assert isinstance(exc_info.value.original_error, httpx.TimeoutException)

    @pytest.mark.asyncio
    async def test_put_connection_error_raises_backend_write_error(self, adapter, document):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.post.side_effect = httpx.ConnectError("connection refused")

            with pytest.raises(BackendWriteError, match="Storage upload error"):
                await adapter.put(document, b"hello")

    @pytest.mark.asyncio
    async def test_get_returns_content(self, adapter):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.get.return_value = Mock(
                status_code=200, content=b"hello", headers={"content-type": "application/pdf"}
            )

            stored = await adapter.get("transactions/tx-1/doc/a.pdf")

        assert stored.content == b"hello"
        assert stored.metadata["content_type"] == "application/pdf"

    @pytest.mark.asyncio
    async def test_get_missing_object(self, adapter):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.get.return_value = Mock(status_code=404, text="not found")

            with pytest.raises(BackendNotFoundError):
                await adapter.get("missing")

    @pytest.mark.asyncio
    async def test_get_server_error(self, adapter):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.get.return_value = Mock(status_code=503, text="unavailable")

            with pytest.raises(StorageError, match="Download failed"):
                await adapter.get("key")

    @pytest.mark.asyncio
    async def test_delete_reports_removed_objects(self, adapter):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            response = Mock(status_code=200)
            response.json.return_value = [{"name": "key"}]
            mock_client.request.return_value = response

            assert await adapter.delete("key") is True

        args, kwargs = mock_client.request.call_args
        assert args[0] == "DELETE"
        assert kwargs["json"] == {"prefixes": ["key"]}

    @pytest.mark.asyncio
    async def test_status_unhealthy_on_connection_error(self, adapter):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client(mock_client_class)
            mock_client.get.side_effect = httpx.ConnectError("down")

            status = await adapter.status()

        assert not status.healthy
        assert status.backend_name == "primary"


class TestLocalFilesystemAdapter:
    """Tests for the local fallback cache."""

    @pytest.fixture
    def adapter(self, tmp_path) -> LocalFilesystemAdapter:
        return LocalFilesystemAdapter(str(tmp_path / "local"))

    @pytest.mark.asyncio
    async def test_put_then_get(self, adapter, document):
        result = await adapter.put(document, b"hello", {"source": "portal"})

        stored = await adapter.get(result.external_key)
        assert stored.content == b"hello"
        assert stored.metadata["metadata"] == {"source": "portal"}
        assert stored.metadata["document"]["id"] == document.id

    @pytest.mark.asyncio
    async def test_put_is_idempotent(self, adapter, document):
        first = await adapter.put(document, b"v1")
        second = await adapter.put(document, b"v2")

        assert first.external_key == second.external_key
        assert (await adapter.get(second.external_key)).content == b"v2"

    @pytest.mark.asyncio
    async def test_get_missing(self, adapter):
        with pytest.raises(BackendNotFoundError):
            await adapter.get("transactions/tx-1/doc_x/a.pdf")

    @pytest.mark.asyncio
    async def test_key_outside_root_is_rejected(self, adapter):
        with pytest.raises(BackendNotFoundError):
            await adapter.get("../../etc/passwd")

    @pytest.mark.asyncio
    async def test_delete(self, adapter, document):
        result = await adapter.put(document, b"hello")

        assert await adapter.delete(result.external_key) is True
        assert await adapter.delete(result.external_key) is False

    @pytest.mark.asyncio
    async def test_write_failure_raises_backend_write_error(self, tmp_path, document):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        adapter = LocalFilesystemAdapter(str(blocker))

        with pytest.raises(BackendWriteError) as exc_info:
            await adapter.put(document, b"hello")

        assert exc_info.value.backend_name == "local"

    @pytest.mark.asyncio
    async def test_status_creates_root(self, adapter):
        status = await adapter.status()

        assert status.healthy
        assert adapter.root.is_dir()


class TestMetadataStoreAdapter:
    """Tests for the database metadata backend."""

    @pytest.mark.asyncio
    async def test_put_then_get_returns_metadata_only(self, session_maker, document):
        adapter = MetadataStoreAdapter(session_maker)

        result = await adapter.put(document, b"ignored", {"source": "portal"})
        stored = await adapter.get(result.external_key)

        assert stored.content is None
        assert stored.metadata["document_id"] == document.id
        assert stored.metadata["tags"] == ["financial", "pdf"]
        assert stored.metadata["metadata"] == {"source": "portal"}

    @pytest.mark.asyncio
    async def test_repeated_put_updates_same_row(self, session_maker, document):
        adapter = MetadataStoreAdapter(session_maker)

        await adapter.put(document, b"", {"v": 1})
        result = await adapter.put(document, b"", {"v": 2})

        stored = await adapter.get(result.external_key)
        assert stored.metadata["metadata"] == {"v": 2}

    @pytest.mark.asyncio
    async def test_get_missing(self, session_maker):
        adapter = MetadataStoreAdapter(session_maker)

        with pytest.raises(BackendNotFoundError):
            await adapter.get("transactions/tx-1/doc_missing/a.pdf")

    @pytest.mark.asyncio
    async def test_delete(self, session_maker, document):
        adapter = MetadataStoreAdapter(session_maker)
        result = await adapter.put(document, b"")

        assert await adapter.delete(result.external_key) is True
        assert await adapter.delete(result.external_key) is False

    @pytest.mark.asyncio
    async def test_status(self, session_maker):
        assert (await MetadataStoreAdapter(session_maker).status()).healthy
