from staffverify.storage.base import (
    ObjectFinalizedEvent,
    ObjectStore,
    StorageEventDispatcher,
    StoredObject,
    build_object_url,
    new_access_token,
)
from staffverify.storage.local import LocalObjectStore

__all__ = [
    "LocalObjectStore",
    "ObjectFinalizedEvent",
    "ObjectStore",
    "StorageEventDispatcher",
    "StoredObject",
    "build_object_url",
    "new_access_token",
]
