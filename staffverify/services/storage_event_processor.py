"""Background enrichment of verification uploads.

Runs once per finalized object under the verification prefix, either from
the in-process dispatcher or the external storage webhook. Delivery is
at-least-once, so every step is idempotent: the redacted derivative keeps
its first access token, and the record merge never flips a field that is
already set.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from staffverify.config import settings
from staffverify.core.exceptions import MatchNotFoundError
from staffverify.repositories.base import Enrichment
from staffverify.repositories.sql import SqlUserStateRepository, SqlVerificationRequestRepository
from staffverify.services import exif_service
from staffverify.services.matcher import build_matcher
from staffverify.services.scoring_service import apply_score
from staffverify.storage.base import ObjectFinalizedEvent, ObjectStore, StorageEventDispatcher

logger = logging.getLogger(__name__)


class StorageEventProcessor:
    def __init__(
        self,
        store: ObjectStore,
        session_factory: async_sessionmaker[AsyncSession],
        verification_prefix: str = "verification/",
        redacted_prefix: str = "verification-redacted/",
        matcher_strategy: str = "recency_fallback",
        candidate_limit: int = 10,
        window_seconds: int = 300,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 2.0,
        jpeg_quality: int = 90,
    ):
        self.store = store
        self.session_factory = session_factory
        self.verification_prefix = verification_prefix
        self.redacted_prefix = redacted_prefix
        self.matcher_strategy = matcher_strategy
        self.candidate_limit = candidate_limit
        self.window_seconds = window_seconds
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.jpeg_quality = jpeg_quality

    def register(self, dispatcher: StorageEventDispatcher) -> None:
        dispatcher.subscribe(self.verification_prefix, self.handle)

    def parse_user_id(self, object_path: str) -> Optional[str]:
        """``verification/{userId}/{filename}`` -> ``userId``; None if malformed."""
        if not object_path.startswith(self.verification_prefix):
            return None
        parts = object_path[len(self.verification_prefix):].split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return parts[0]

    def redacted_path_for(self, object_path: str) -> str:
        return self.redacted_prefix + object_path[len(self.verification_prefix):]

    async def handle(self, event: ObjectFinalizedEvent) -> Optional[str]:
        """Enrich the request matching ``event``. Returns the matched request id."""
        name = event.name
        if not name.startswith(self.verification_prefix):
            return None

        user_id = self.parse_user_id(name)
        if user_id is None:
            logger.warning("Skipping malformed verification object path: %s", name)
            return None

        # Store I/O and Pillow work run in worker threads
        data = await asyncio.to_thread(self.store.get, name)
        if data is None:
            logger.warning("Finalized object %s is no longer in the store", name)
            return None

        gps = await asyncio.to_thread(exif_service.extract_gps, data)
        redacted_url = await self._ensure_redacted(name, data)

        enrichment = Enrichment(
            object_path=name,
            has_gps=gps is not None,
            gps=gps,
            photo_redacted_url=redacted_url,
            parsed_at=datetime.now(timezone.utc),
        )
        request_id = await self._merge_with_retry(user_id, event, enrichment)
        if request_id is None:
            err = MatchNotFoundError(name, user_id)
            logger.warning("%s (user=%s); enrichment omitted", err.detail, user_id)
        return request_id

    async def _ensure_redacted(self, object_path: str, data: bytes) -> Optional[str]:
        """Create the metadata-free derivative once and return its token URL."""
        redacted_path = self.redacted_path_for(object_path)
        existing_url = await self._existing_redacted_url(redacted_path)
        if existing_url is not None:
            return existing_url

        try:
            redacted = await asyncio.to_thread(exif_service.redact, data, quality=self.jpeg_quality)
        except exif_service.RedactionError as e:
            logger.warning("Redaction failed for %s: %s", object_path, e)
            return None

        try:
            stored = await self.store.put_async(redacted_path, redacted, content_type="image/jpeg")
        except FileExistsError:
            # A concurrent delivery of the same event stored it first
            logger.info("Redacted derivative %s already stored by another delivery", redacted_path)
            return await self._existing_redacted_url(redacted_path)
        logger.info("Stored redacted derivative %s (%d bytes)", redacted_path, stored.size)
        return self.store.download_url(redacted_path, stored.access_token)

    async def _existing_redacted_url(self, redacted_path: str) -> Optional[str]:
        existing = await asyncio.to_thread(self.store.stat, redacted_path)
        if existing is not None and existing.access_token:
            return self.store.download_url(redacted_path, existing.access_token)
        return None

    async def _merge_with_retry(
        self, user_id: str, event: ObjectFinalizedEvent, enrichment: Enrichment
    ) -> Optional[str]:
        # The record write may land after the upload event; retry with backoff.
        for attempt in range(self.retry_attempts + 1):
            request_id = await self._merge_once(user_id, event, enrichment)
            if request_id is not None:
                return request_id
            if attempt < self.retry_attempts:
                delay = self.retry_backoff_seconds * (2 ** attempt)
                logger.debug(
                    "No candidate for %s yet (attempt %d/%d), retrying in %.1fs",
                    event.name, attempt + 1, self.retry_attempts + 1, delay,
                )
                await asyncio.sleep(delay)
        return None

    async def _merge_once(
        self, user_id: str, event: ObjectFinalizedEvent, enrichment: Enrichment
    ) -> Optional[str]:
        async with self.session_factory() as db:
            requests = SqlVerificationRequestRepository(db)
            users = SqlUserStateRepository(db)
            matcher = build_matcher(
                self.matcher_strategy,
                requests,
                candidate_limit=self.candidate_limit,
                window_seconds=self.window_seconds,
                reference_time=event.time_created,
            )
            request_id = await matcher.find_candidate(user_id, event.name)
            if request_id is None:
                return None

            request = await requests.merge_enrichment(request_id, enrichment)
            if request is None:
                return None
            apply_score(request, await users.get(request.user_id))
            await requests.commit()

        logger.info(
            "Enriched request %s from %s (has_gps=%s)",
            request_id, event.name, enrichment.has_gps,
        )
        return request_id


def build_default_processor(store: ObjectStore, session_factory=None) -> StorageEventProcessor:
    """Processor wired from settings."""
    if session_factory is None:
        from staffverify.database import async_session
        session_factory = async_session
    return StorageEventProcessor(
        store,
        session_factory,
        verification_prefix=settings.verification_prefix,
        redacted_prefix=settings.redacted_prefix,
        matcher_strategy=settings.matcher_strategy,
        candidate_limit=settings.match_candidate_limit,
        window_seconds=settings.match_time_window_seconds,
        retry_attempts=settings.enrichment_retry_attempts,
        retry_backoff_seconds=settings.enrichment_retry_backoff_seconds,
        jpeg_quality=settings.redacted_jpeg_quality,
    )


_processor: StorageEventProcessor | None = None


def get_processor() -> StorageEventProcessor:
    """Get or create the global processor, bound to the global object store."""
    global _processor
    if _processor is None:
        from staffverify.services.storage_service import get_storage
        _processor = build_default_processor(get_storage())
    return _processor


def set_processor(processor: StorageEventProcessor | None) -> None:
    global _processor
    _processor = processor
