"""Local filesystem backend, used as a fallback cache."""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

from docvault.core.exceptions import BackendNotFoundError, BackendWriteError
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

META_SUFFIX = ".meta.json"


class LocalFilesystemAdapter(BackendAdapter):
    """Writes content and a JSON metadata sidecar under a root directory."""

    def __init__(self, root_dir: str, name: str = "local"):
        self.name = name
        self.root = Path(root_dir)

    def _path(self, external_key: str) -> Path:
        path = (self.root / external_key).resolve()
        if self.root.resolve() not in path.parents:
            raise BackendNotFoundError(f"Key escapes storage root: {external_key}")
        return path

    async def put(
        self,
        document: Document,
        content: bytes,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PutResult:
        external_key = build_external_key(document)
        path = self._path(external_key)
        sidecar = {
            "document": document.model_dump(mode="json"),
            "metadata": metadata or {},
        }
        try:
            await asyncio.to_thread(self._write, path, content, sidecar)
        except OSError as e:
            LOGGER.error(
                f"Local write failed: {str(e)}",
                exc_info=True,
                extra={"document_id": document.id, "path": str(path)},
            )
            raise BackendWriteError(
                f"Local write failed: {str(e)}", self.name, original_error=e
            ) from e

        return PutResult(external_key=external_key, url=path.as_uri())

    @staticmethod
    def _write(path: Path, content: bytes, sidecar: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so a replayed put never leaves a torn file
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(content)
        tmp.replace(path)
        path.with_name(path.name + META_SUFFIX).write_text(json.dumps(sidecar))

    async def get(self, external_key: str) -> StoredObject:
        path = self._path(external_key)
        if not path.exists():
            raise BackendNotFoundError(f"Object not found: {external_key}")

        content = await asyncio.to_thread(path.read_bytes)
        meta_path = path.with_name(path.name + META_SUFFIX)
        metadata: Dict[str, Any] = {}
        if meta_path.exists():
            metadata = json.loads(await asyncio.to_thread(meta_path.read_text))
        return StoredObject(external_key=external_key, content=content, metadata=metadata)

    async def delete(self, external_key: str) -> bool:
        path = self._path(external_key)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        await asyncio.to_thread(path.with_name(path.name + META_SUFFIX).unlink, True)
        return True

    async def status(self) -> BackendStatus:
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            return BackendStatus(backend_name=self.name, healthy=False, detail=str(e))
        return BackendStatus(backend_name=self.name, healthy=True, detail=str(self.root))
