"""
Media blob storage

Uploads are written under a unique key and exposed by URL. Deletion is idempotent.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Optional, Protocol

from kindred.core.config import settings
from kindred.core.logging import get_logger

logger = get_logger(__name__)


class MediaStorage(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str: ...

    async def delete(self, key: str) -> None: ...

    def key_from_url(self, url: str) -> Optional[str]: ...


def new_media_key(prefix: str, extension: str) -> str:
    return f"{prefix}/{uuid.uuid4().hex}.{extension.lstrip('.')}"


class LocalMediaStorage:
    """Filesystem-backed storage served by a static route or CDN origin"""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.media_root)
        self.base_url = (base_url or settings.media_base_url).rstrip("/")

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        await asyncio.to_thread(self._write, path, data)
        logger.debug(f"Stored {len(data)} bytes ({content_type}) at {key}")
        return f"{self.base_url}/{key}"

    async def delete(self, key: str) -> None:
        path = self._path(key)
        await asyncio.to_thread(path.unlink, True)

    def key_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/"
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Invalid media key: {key}")
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
