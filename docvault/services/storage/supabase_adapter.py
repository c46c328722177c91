"""Primary backend: Supabase object storage over HTTP."""

from typing import Any, Dict, Optional

import httpx

from docvault.core.exceptions import BackendNotFoundError, BackendWriteError, StorageError
from docvault.schemas.documents import Document
from docvault.services.storage.base_adapter import (
    BackendAdapter,
    BackendStatus,
    PutResult,
    StoredObject,
    build_external_key,
)
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class SupabaseStorageAdapter(BackendAdapter):
    """Stores document bytes in a Supabase storage bucket."""

    def __init__(
        self,
        url: str,
        service_role_key: str,
        bucket: str = "documents",
        timeout: float = 300.0,
        name: str = "primary",
    ):
        self.name = name
        self.url = url.rstrip("/")
        self.service_role_key = service_role_key
        self.bucket = bucket
        self.timeout = timeout
        self.base_api_url = f"{self.url}/storage/v1"
        self.headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
        }

    def object_url(self, external_key: str) -> str:
        return f"{self.base_api_url}/object/{self.bucket}/{external_key}"

    async def put(
        self,
        document: Document,
        content: bytes,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PutResult:
        """Upload a document to the bucket.

        Uses ``x-upsert`` so a replayed write overwrites the same object.

        Raises:
            BackendWriteError: If the upload fails.
        """
        external_key = build_external_key(document)
        upload_url = self.object_url(external_key)

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    upload_url,
                    headers={
                        **self.headers,
                        "Content-Type": document.mime_type or "application/octet-stream",
                        "x-upsert": "true",
                    },
                    content=content,
                    timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            LOGGER.error(
                "Supabase upload timed out",
                extra={"bucket": self.bucket, "path": external_key},
            )
            raise BackendWriteError(
                f"Upload timed out after {self.timeout}s", self.name, original_error=e
            ) from e
        except httpx.HTTPError as e:
            LOGGER.error(f"Error uploading file to Supabase: {str(e)}", exc_info=True)
            raise BackendWriteError(
                f"Storage upload error: {str(e)}", self.name, original_error=e
            ) from e

        if response.status_code != 200:
            LOGGER.error(
                f"Failed to upload file to Supabase: {response.text}",
                extra={"bucket": self.bucket, "path": external_key, "status_code": response.status_code}
            )
            raise BackendWriteError(f"Upload failed: {response.text}", self.name)

        return PutResult(external_key=external_key, url=upload_url)

    async def get(self, external_key: str) -> StoredObject:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    self.object_url(external_key),
                    headers=self.headers,
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            LOGGER.error(f"Error downloading file from Supabase: {str(e)}", exc_info=True)
            raise StorageError(f"Storage download error: {str(e)}", original_error=e) from e

        if response.status_code in (400, 404):
            raise BackendNotFoundError(f"Object not found: {external_key}")
        if response.status_code != 200:
            raise StorageError(f"Download failed: {response.text}")

        return StoredObject(
            external_key=external_key,
            content=response.content,
            metadata={"content_type": response.headers.get("content-type")},
        )

    async def delete(self, external_key: str) -> bool:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    "DELETE",
                    f"{self.base_api_url}/object/{self.bucket}",
                    headers=self.headers,
                    json={"prefixes": [external_key]},
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            LOGGER.error(f"Error deleting file from Supabase: {str(e)}", exc_info=True)
            raise StorageError(f"Storage delete error: {str(e)}", original_error=e) from e

        if response.status_code != 200:
            raise StorageError(f"Delete failed: {response.text}")

        # Supabase answers with the list of removed objects
        return bool(response.json())

    async def status(self) -> BackendStatus:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.base_api_url}/bucket/{self.bucket}",
                    headers=self.headers,
                    timeout=10.0,
                )
        except httpx.HTTPError as e:
            return BackendStatus(backend_name=self.name, healthy=False, detail=str(e))

        return BackendStatus(
            backend_name=self.name,
            healthy=response.status_code == 200,
            detail=None if response.status_code == 200 else f"HTTP {response.status_code}",
        )
