"""
File Store — raw PDF bytes

The registry only keeps a storage_key; the bytes live in a FileStore:

  FileStore (ABC)
    ├─ S3FileStore     s3://<bucket>/<prefix>/<object id>.pdf   (storage/s3.py)
    └─ LocalFileStore  <local_storage_dir>/<object id>.pdf      (dev / tests)

Keys are generated server-side (new_key); a client-supplied filename never
becomes part of a path.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from uuid import uuid4

from pdfqa.core.config import Settings

logger = logging.getLogger(__name__)


class FileStore(ABC):

    def new_key(self) -> str:
        """Fresh, server-generated object key."""
        return f"{uuid4()}.pdf"

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        """Store `data` under `key`; returns the key."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the stored bytes. Raises FileNotFoundError for unknown keys."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class LocalFileStore(FileStore):
    """Filesystem-backed store for local development and tests."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ValueError(f"Invalid storage key: {key!r}")
        return path

    async def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Local upload ok | key=%s size=%d", key, len(data))
        return key

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise FileNotFoundError(f"Object not found: {key}")
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        await asyncio.to_thread(path.unlink, True)


def get_file_store(settings: Settings) -> FileStore:
    backend = settings.storage_backend.lower()

    if backend == "s3":
        from pdfqa.storage.s3 import S3FileStore
        return S3FileStore(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.aws_region,
        )

    if backend == "local":
        return LocalFileStore(settings.local_storage_dir)

    raise ValueError(
        f"Unknown storage backend: '{backend}'. Valid options: 's3', 'local'"
    )
