import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from staffverify.storage.base import ObjectStore, StorageEventDispatcher, StoredObject

logger = logging.getLogger(__name__)

_META_DIR = ".meta"


class LocalObjectStore(ObjectStore):
    """Filesystem object store.

    Objects live at ``root/<path>``; content type, access token and creation
    time live in a JSON sidecar under ``root/.meta/<path>.json`` so listings
    only ever see object files.
    """

    bucket_name = "local"

    def __init__(
        self,
        root_dir: str,
        public_base_url: str,
        dispatcher: Optional[StorageEventDispatcher] = None,
    ):
        super().__init__(public_base_url, dispatcher)
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _write(self, path: str, data: bytes, content_type: str, access_token: str) -> StoredObject:
        target = self._safe_path(path)
        meta_path = self._safe_path(f"{_META_DIR}/{path}.json")
        if target is None or meta_path is None:
            raise ValueError(f"Object path escapes store root: {path!r}")

        target.parent.mkdir(parents=True, exist_ok=True)
        meta_path.parent.mkdir(parents=True, exist_ok=True)

        created = datetime.now(timezone.utc)
        with open(target, "xb") as fh:
            fh.write(data)
        meta_path.write_text(json.dumps({
            "content_type": content_type,
            "access_token": access_token,
            "time_created": created.isoformat(),
        }))
        logger.debug("Stored %s (%d bytes)", path, len(data))
        return StoredObject(
            path=path,
            size=len(data),
            content_type=content_type,
            access_token=access_token,
            time_created=created,
        )

    def get(self, path: str) -> Optional[bytes]:
        target = self._safe_path(path)
        if target is not None and target.is_file():
            return target.read_bytes()
        return None

    def stat(self, path: str) -> Optional[StoredObject]:
        target = self._safe_path(path)
        meta_path = self._safe_path(f"{_META_DIR}/{path}.json")
        if target is None or not target.is_file():
            return None

        meta = {}
        if meta_path is not None and meta_path.is_file():
            meta = json.loads(meta_path.read_text())
        created = meta.get("time_created")
        return StoredObject(
            path=path,
            size=target.stat().st_size,
            content_type=meta.get("content_type", "application/octet-stream"),
            access_token=meta.get("access_token", ""),
            time_created=(
                datetime.fromisoformat(created)
                if created
                else datetime.fromtimestamp(target.stat().st_mtime, tz=timezone.utc)
            ),
        )

    def delete(self, path: str) -> bool:
        target = self._safe_path(path)
        if target is None or not target.is_file():
            return False
        target.unlink()
        meta_path = self._safe_path(f"{_META_DIR}/{path}.json")
        if meta_path is not None and meta_path.is_file():
            meta_path.unlink()
        logger.debug("Deleted %s", path)
        return True

    def list_paths(self, prefix: str) -> list[str]:
        paths = []
        for file in self.root.rglob("*"):
            if not file.is_file():
                continue
            rel = file.relative_to(self.root).as_posix()
            if rel.startswith(f"{_META_DIR}/"):
                continue
            if rel.startswith(prefix):
                paths.append(rel)
        return sorted(paths)

    def _safe_path(self, path: str) -> Optional[Path]:
        """Resolve an object path and ensure it stays under the store root."""
        candidate = self.root / path
        try:
            root_resolved = self.root.resolve()
            resolved = candidate.resolve()
        except OSError:
            return None
        if root_resolved in resolved.parents:
            return resolved
        return None
