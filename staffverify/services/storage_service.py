from staffverify.config import settings
from staffverify.storage.base import ObjectStore, StorageEventDispatcher

# Singletons shared by the request path and the storage event worker
_dispatcher = StorageEventDispatcher()
_storage: ObjectStore | None = None


def get_event_dispatcher() -> StorageEventDispatcher:
    return _dispatcher


def get_storage() -> ObjectStore:
    """Get or create the global object store.

    Uses Azure Blob Storage when OBJECT_STORE_BACKEND=azure, otherwise the
    local filesystem store.
    """
    global _storage
    if _storage is None:
        if settings.object_store_backend == "azure":
            from staffverify.storage.azure_blob import AzureBlobObjectStore
            _storage = AzureBlobObjectStore(
                connection_string=settings.azure_storage_connection_string,
                public_base_url=settings.public_base_url,
                container_name=settings.azure_storage_container,
                dispatcher=_dispatcher,
            )
        else:
            from staffverify.storage.local import LocalObjectStore
            _storage = LocalObjectStore(
                root_dir=settings.object_store_path,
                public_base_url=settings.public_base_url,
                dispatcher=_dispatcher,
            )
    return _storage


def set_storage(store: ObjectStore | None) -> None:
    """Replace the global store (tests, alternate deployments)."""
    global _storage
    if store is not None and store.dispatcher is None:
        store.dispatcher = _dispatcher
    _storage = store
