"""
Azure Blob Storage backend. Download URLs are read-only SAS links.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobSasPermissions, BlobServiceClient, ContentSettings, generate_blob_sas

from ..config import settings
from .provider import StorageProvider


class BlobStorageProvider(StorageProvider):
    name = "blob"

    def __init__(self, connection_string: Optional[str] = None, container: Optional[str] = None) -> None:
        connection_string = connection_string or settings.azure_blob_connection
        self._container = container or settings.azure_blob_container
        if not connection_string or not self._container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(connection_string)

    def _blob(self, key: str):
        return self._service.get_blob_client(self._container, key.lstrip("/"))

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self._blob(key).upload_blob(data, overwrite=True, content_settings=ContentSettings(content_type=content_type))

    def read(self, key: str) -> Optional[bytes]:
        try:
            return self._blob(key).download_blob().readall()
        except ResourceNotFoundError:
            return None

    def exists(self, key: str) -> bool:
        return self._blob(key).exists()

    def delete(self, key: str) -> None:
        try:
            self._blob(key).delete_blob()
        except ResourceNotFoundError:
            pass

    def download_url(self, key: str, expires_s: int = 900) -> Optional[str]:
        blob = self._blob(key)
        sas = generate_blob_sas(
            account_name=self._service.account_name,
            container_name=self._container,
            blob_name=key.lstrip("/"),
            account_key=self._service.credential.account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_s),
        )
        return f"{blob.url}?{sas}"
