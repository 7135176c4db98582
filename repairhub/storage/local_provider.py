"""
Filesystem storage for development and tests.
Files live under STORAGE_LOCAL_DIR and are served back by /files/local/{key}.
"""
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import structlog

from ..config import settings
from .provider import StorageProvider

logger = structlog.get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    name = "local"

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_local_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        parts = [p for p in key.replace("\\", "/").split("/") if p not in ("", ".", "..")]
        if not parts:
            raise ValueError(f"Invalid storage key {key!r}")
        return self.base_dir.joinpath(*parts)

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)
        logger.debug("local_object_stored", key=key, size=len(data))

    def read(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        return path.read_bytes() if path.is_file() else None

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        if path.is_file():
            path.unlink()

    def download_url(self, key: str, expires_s: int = 900) -> Optional[str]:
        if not self.exists(key):
            return None
        return f"{settings.public_base_url}/files/local/{quote(key.lstrip('/'))}"
