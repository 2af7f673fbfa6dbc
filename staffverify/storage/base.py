"""Object store contract and finalize-event plumbing.

Every completed ``put`` produces one ``ObjectFinalizedEvent``. Delivery is
at-least-once: subscribers must tolerate seeing the same path twice.
Writes are create-only; an existing object is never replaced.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

from staffverify.core.async_tasks import fire_and_forget

logger = logging.getLogger(__name__)


def new_access_token() -> str:
    return str(uuid.uuid4())


def build_object_url(base_url: str, path: str, token: str) -> str:
    """Token-bearing download URL: ``{base}/{encoded path}?alt=media&token=...``."""
    return f"{base_url.rstrip('/')}/{quote(path, safe='')}?alt=media&token={token}"


@dataclass(frozen=True)
class StoredObject:
    path: str
    size: int
    content_type: str
    access_token: str
    time_created: datetime


@dataclass(frozen=True)
class ObjectFinalizedEvent:
    name: str
    content_type: str = "application/octet-stream"
    size: int = 0
    time_created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    bucket: str = ""

    @classmethod
    def from_stored(cls, obj: StoredObject, bucket: str = "") -> "ObjectFinalizedEvent":
        return cls(
            name=obj.path,
            content_type=obj.content_type,
            size=obj.size,
            time_created=obj.time_created,
            bucket=bucket,
        )


EventHandler = Callable[[ObjectFinalizedEvent], Awaitable[Any]]


class StorageEventDispatcher:
    """Fans finalize events out to prefix-scoped subscribers as background tasks."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[str, EventHandler]] = []

    def subscribe(self, prefix: str, handler: EventHandler) -> None:
        self._subscribers.append((prefix, handler))

    def clear(self) -> None:
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event: ObjectFinalizedEvent) -> int:
        """Schedule every matching subscriber. Returns the number scheduled."""
        scheduled = 0
        for prefix, handler in self._subscribers:
            if not event.name.startswith(prefix):
                continue
            task = fire_and_forget(handler(event), task_name=f"storage_finalize:{event.name}")
            if task is not None:
                scheduled += 1
        logger.debug("Finalize event for %s scheduled %d handler(s)", event.name, scheduled)
        return scheduled


class ObjectStore(ABC):
    """Binary storage addressed by path."""

    bucket_name: str = ""

    def __init__(self, public_base_url: str, dispatcher: Optional[StorageEventDispatcher] = None):
        self.public_base_url = public_base_url
        self.dispatcher = dispatcher

    def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        access_token: Optional[str] = None,
    ) -> StoredObject:
        """Store ``data`` at ``path`` and emit a finalize event.

        Raises ``FileExistsError`` if ``path`` is already taken.
        """
        stored = self._create(path, data, content_type, access_token)
        self._emit(stored)
        return stored

    async def put_async(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        access_token: Optional[str] = None,
    ) -> StoredObject:
        """``put`` for async callers. The write runs in a worker thread and the
        finalize event is emitted back on the event loop."""
        stored = await asyncio.to_thread(self._create, path, data, content_type, access_token)
        self._emit(stored)
        return stored

    def _create(
        self, path: str, data: bytes, content_type: str, access_token: Optional[str]
    ) -> StoredObject:
        if not path or path.startswith("/") or ".." in path.split("/"):
            raise ValueError(f"Invalid object path: {path!r}")
        if not data:
            raise ValueError("Object content is empty")
        return self._write(path, data, content_type, access_token or new_access_token())

    def _emit(self, stored: StoredObject) -> None:
        if self.dispatcher is not None:
            self.dispatcher.emit(ObjectFinalizedEvent.from_stored(stored, bucket=self.bucket_name))

    def download_url(self, path: str, token: str) -> str:
        return build_object_url(self.public_base_url, path, token)

    def exists(self, path: str) -> bool:
        return self.stat(path) is not None

    @abstractmethod
    def _write(self, path: str, data: bytes, content_type: str, access_token: str) -> StoredObject:
        """Create the object; raise ``FileExistsError`` if it already exists."""

    @abstractmethod
    def get(self, path: str) -> Optional[bytes]: ...

    @abstractmethod
    def stat(self, path: str) -> Optional[StoredObject]: ...

    @abstractmethod
    def delete(self, path: str) -> bool: ...

    @abstractmethod
    def list_paths(self, prefix: str) -> list[str]: ...
