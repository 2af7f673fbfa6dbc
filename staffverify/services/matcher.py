"""Associate a finalized object path with the verification request it belongs to.

The upload event carries only a path, so the join back to a record is a
heuristic. Strategies share one contract, ``find_candidate``, and can be
swapped via the ``MATCHER_STRATEGY`` setting.

Known risk: two submissions in quick succession, where the event outruns the
record write, can attach enrichment to the wrong request under the recency
fallback. ``TimeWindowMatcher`` and ``StrictPathMatcher`` trade recall for
precision.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

from staffverify.models.verification import VerificationRequest
from staffverify.repositories.base import VerificationRequestRepository

logger = logging.getLogger(__name__)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def references_path(request: VerificationRequest, object_path: str) -> bool:
    """True if the record points at ``object_path`` by stored path or URL text."""
    if request.photo_path and request.photo_path == object_path:
        return True
    url = request.photo_url or ""
    if not url:
        return False
    return object_path in url or quote(object_path, safe="") in url


class RequestMatcher(ABC):
    def __init__(self, repo: VerificationRequestRepository, candidate_limit: int = 10):
        self.repo = repo
        self.candidate_limit = candidate_limit

    async def candidates(self, user_id: str) -> list[VerificationRequest]:
        return await self.repo.list_recent_for_user(user_id, self.candidate_limit)

    @abstractmethod
    async def find_candidate(self, user_id: str, object_path: str) -> Optional[str]:
        """Return the id of the request ``object_path`` belongs to, or None."""


class StrictPathMatcher(RequestMatcher):
    """Textual match only; never guesses."""

    async def find_candidate(self, user_id: str, object_path: str) -> Optional[str]:
        for request in await self.candidates(user_id):
            if references_path(request, object_path):
                return request.id
        return None


class RecencyFallbackMatcher(RequestMatcher):
    """Textual match, else the user's most recent request."""

    async def find_candidate(self, user_id: str, object_path: str) -> Optional[str]:
        candidates = await self.candidates(user_id)
        if not candidates:
            return None
        for request in candidates:
            if references_path(request, object_path):
                return request.id
        logger.info(
            "No textual match for %s; falling back to most recent request %s",
            object_path, candidates[0].id,
        )
        return candidates[0].id


class TimeWindowMatcher(RequestMatcher):
    """Textual match, else a pending photo-less request submitted near the upload time."""

    def __init__(
        self,
        repo: VerificationRequestRepository,
        candidate_limit: int = 10,
        window_seconds: int = 300,
        reference_time: Optional[datetime] = None,
    ):
        super().__init__(repo, candidate_limit)
        self.window = timedelta(seconds=window_seconds)
        self.reference_time = reference_time

    async def find_candidate(self, user_id: str, object_path: str) -> Optional[str]:
        candidates = await self.candidates(user_id)
        for request in candidates:
            if references_path(request, object_path):
                return request.id

        reference = _as_utc(self.reference_time or datetime.now(timezone.utc))
        for request in candidates:
            if request.status != "pending" or request.photo_url:
                continue
            if request.submitted_at is None:
                continue
            if abs(_as_utc(request.submitted_at) - reference) <= self.window:
                return request.id
        return None


MATCHER_STRATEGIES = {
    "recency_fallback": RecencyFallbackMatcher,
    "time_window": TimeWindowMatcher,
    "strict": StrictPathMatcher,
}


def build_matcher(
    strategy: str,
    repo: VerificationRequestRepository,
    candidate_limit: int = 10,
    window_seconds: int = 300,
    reference_time: Optional[datetime] = None,
) -> RequestMatcher:
    if strategy not in MATCHER_STRATEGIES:
        raise ValueError(
            f"Unknown matcher strategy '{strategy}'. "
            f"Choose from: {', '.join(sorted(MATCHER_STRATEGIES))}"
        )
    if strategy == "time_window":
        return TimeWindowMatcher(repo, candidate_limit, window_seconds, reference_time)
    return MATCHER_STRATEGIES[strategy](repo, candidate_limit)
