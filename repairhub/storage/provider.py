from typing import Optional


class StorageProvider:
    """Object storage for signature images, addressed by key."""

    name = "abstract"

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        raise NotImplementedError

    def read(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def download_url(self, key: str, expires_s: int = 900) -> Optional[str]:
        """Short-lived URL the apps can show the stored image from."""
        raise NotImplementedError
