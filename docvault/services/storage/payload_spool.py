"""On-disk spool holding upload payloads until every backend has them."""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from docvault.core.exceptions import StorageError
from docvault.schemas.documents import Document
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class SpooledPayload(BaseModel):
    document: Document
    content: bytes
    metadata: Dict[str, Any] = Field(default_factory=dict)
    target: Optional[str] = None


class PayloadSpool:
    """Keeps ``<id>.bin`` and ``<id>.json`` per document so retries can replay a write.

    The payload reference handed to the sync queue is the document id.
    """

    def __init__(self, spool_dir: str):
        self.spool_dir = Path(spool_dir)

    def _paths(self, payload_ref: str) -> Tuple[Path, Path]:
        return (
            self.spool_dir / f"{payload_ref}.bin",
            self.spool_dir / f"{payload_ref}.json",
        )

    async def store(
        self,
        document: Document,
        content: bytes,
        metadata: Optional[Dict[str, Any]] = None,
        target: Optional[str] = None,
    ) -> str:
        bin_path, json_path = self._paths(document.id)
        header = {
            "document": document.model_dump(mode="json"),
            "metadata": metadata or {},
            "target": target,
        }

        def _write() -> None:
            self.spool_dir.mkdir(parents=True, exist_ok=True)
            bin_path.write_bytes(content)
            json_path.write_text(json.dumps(header))

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            LOGGER.error(f"Failed to spool payload {document.id}: {str(e)}", exc_info=True)
            raise StorageError("Failed to spool upload payload", original_error=e) from e
        return document.id

    async def load(self, payload_ref: str) -> SpooledPayload:
        """Load a spooled payload.

        Raises:
            StorageError: If the payload is missing or unreadable
        """
        bin_path, json_path = self._paths(payload_ref)

        def _read() -> Tuple[bytes, Dict[str, Any]]:
            return bin_path.read_bytes(), json.loads(json_path.read_text())

        try:
            content, header = await asyncio.to_thread(_read)
        except (OSError, ValueError) as e:
            raise StorageError(f"Spooled payload unavailable: {payload_ref}", original_error=e) from e

        return SpooledPayload(
            document=Document.model_validate(header["document"]),
            content=content,
            metadata=header.get("metadata") or {},
            target=header.get("target"),
        )

    async def release(self, payload_ref: str) -> None:
        for path in self._paths(payload_ref):
            await asyncio.to_thread(path.unlink, True)
        LOGGER.debug(f"Released spooled payload {payload_ref}")

    def exists(self, payload_ref: str) -> bool:
        return self._paths(payload_ref)[0].exists()
