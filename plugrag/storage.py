"""Object storage for uploaded document bytes."""
import asyncio
from pathlib import Path
from typing import Protocol

import structlog

from plugrag import config
from plugrag.exceptions import ObjectNotFoundError

logger = structlog.get_logger()


class ObjectStore(Protocol):
    """Raw bytes by storage key."""

    async def get(self, key: str) -> bytes:
        ...

    async def put(self, key: str, data: bytes) -> None:
        ...


class LocalObjectStore:
    """Filesystem-backed object store.

    Keys are relative POSIX paths below ``root``; keys that would escape the
    root are rejected.
    """

    def __init__(self, root: Path = None):
        self.root = Path(root or config.OBJECT_STORE_DIR).resolve()

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise ObjectNotFoundError(f"Invalid storage key: {key}")
        return path

    async def get(self, key: str) -> bytes:
        """Read an object.

        Raises:
            ObjectNotFoundError: If the key does not exist
        """
        path = self._path_for(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {key}")
        data = await asyncio.to_thread(path.read_bytes)
        logger.debug("object_read", key=key, size=len(data))
        return data

    async def put(self, key: str, data: bytes) -> None:
        """Write an object, creating parent directories."""
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        logger.info("object_written", key=key, size=len(data))
