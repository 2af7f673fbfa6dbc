"""Azure Blob Storage backend for verification uploads.

Object paths map 1:1 to blob names. The access token is kept in blob
metadata so derived download URLs survive restarts.

Requires: AZURE_STORAGE_CONNECTION_STRING and AZURE_STORAGE_CONTAINER env vars.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from staffverify.storage.base import ObjectStore, StorageEventDispatcher, StoredObject

logger = logging.getLogger(__name__)


class AzureBlobObjectStore(ObjectStore):
    """Azure Blob Storage object store."""

    def __init__(
        self,
        connection_string: str,
        public_base_url: str,
        container_name: str = "verification-uploads",
        dispatcher: Optional[StorageEventDispatcher] = None,
    ):
        if not connection_string:
            raise ValueError(
                "Azure Blob Storage requires AZURE_STORAGE_CONNECTION_STRING. "
                "Set the connection string via environment variable."
            )
        super().__init__(public_base_url, dispatcher)
        self._connection_string = connection_string
        self._container_name = container_name
        self.bucket_name = container_name
        self._client = None

    def _get_client(self):
        """Lazy-initialize the BlobServiceClient."""
        if self._client is None:
            from azure.core.exceptions import ResourceNotFoundError
            from azure.storage.blob import BlobServiceClient

            self._client = BlobServiceClient.from_connection_string(self._connection_string)
            # Ensure container exists
            container_client = self._client.get_container_client(self._container_name)
            try:
                container_client.get_container_properties()
            except ResourceNotFoundError:
                self._client.create_container(self._container_name)
                logger.info("Created blob container: %s", self._container_name)
        return self._client

    def _blob_client(self, path: str):
        return self._get_client().get_blob_client(container=self._container_name, blob=path)

    def _write(self, path: str, data: bytes, content_type: str, access_token: str) -> StoredObject:
        from azure.core.exceptions import AzureError, ResourceExistsError
        from azure.storage.blob import ContentSettings

        blob_client = self._blob_client(path)
        try:
            blob_client.upload_blob(
                data,
                overwrite=False,
                content_settings=ContentSettings(content_type=content_type),
                metadata={"access_token": access_token},
            )
            logger.debug("Uploaded blob: %s (%d bytes)", path, len(data))
        except ResourceExistsError as e:
            raise FileExistsError(f"Blob already exists: {path}") from e
        except AzureError as e:
            logger.exception("Failed to upload blob: %s", path)
            # Callers treat OSError as a retryable storage failure
            raise OSError(f"Blob upload failed for {path}") from e

        return StoredObject(
            path=path,
            size=len(data),
            content_type=content_type,
            access_token=access_token,
            time_created=datetime.now(timezone.utc),
        )

    def get(self, path: str) -> Optional[bytes]:
        from azure.core.exceptions import ResourceNotFoundError

        try:
            return self._blob_client(path).download_blob().readall()
        except ResourceNotFoundError:
            return None

    def stat(self, path: str) -> Optional[StoredObject]:
        from azure.core.exceptions import ResourceNotFoundError

        try:
            props = self._blob_client(path).get_blob_properties()
        except ResourceNotFoundError:
            return None
        return StoredObject(
            path=path,
            size=props.size,
            content_type=props.content_settings.content_type or "application/octet-stream",
            access_token=(props.metadata or {}).get("access_token", ""),
            time_created=props.creation_time,
        )

    def delete(self, path: str) -> bool:
        from azure.core.exceptions import ResourceNotFoundError

        try:
            self._blob_client(path).delete_blob()
            logger.debug("Deleted blob: %s", path)
            return True
        except ResourceNotFoundError:
            return False

    def list_paths(self, prefix: str) -> list[str]:
        container_client = self._get_client().get_container_client(self._container_name)
        return sorted(blob.name for blob in container_client.list_blobs(name_starts_with=prefix))
