"""
Storage for uploaded knowledge base files.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class BlobNotFoundError(Exception):
    pass


class BlobStorage(ABC):

    @abstractmethod
    async def save(self, path: str, data: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    async def load(self, path: str) -> bytes:
        """Raises BlobNotFoundError when nothing is stored at path."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Raises BlobNotFoundError when nothing is stored at path."""


class InMemoryBlobStorage(BlobStorage):

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._content_types: Dict[str, str] = {}

    async def save(self, path: str, data: bytes, content_type: str) -> None:
        self._blobs[path] = bytes(data)
        self._content_types[path] = content_type

    async def load(self, path: str) -> bytes:
        try:
            return self._blobs[path]
        except KeyError:
            raise BlobNotFoundError(path) from None

    async def delete(self, path: str) -> None:
        if self._blobs.pop(path, None) is None:
            raise BlobNotFoundError(path)
        self._content_types.pop(path, None)

    def content_type(self, path: str) -> Optional[str]:
        return self._content_types.get(path)


class LocalBlobStorage(BlobStorage):
    """Files under a root directory, one file per storage path."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Storage path escapes the storage root: {path}")
        return target

    async def save(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.get_running_loop().run_in_executor(None, _write)
        logger.debug(f"Stored {len(data)} bytes at {target}")

    async def load(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.exists():
            raise BlobNotFoundError(path)
        return await asyncio.get_running_loop().run_in_executor(None, target.read_bytes)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        if not target.exists():
            raise BlobNotFoundError(path)
        await asyncio.get_running_loop().run_in_executor(None, target.unlink)
