"""Record store interfaces.

Services receive these instead of reaching for a session directly, so the
decision fan-out and enrichment merge can be exercised against any backend.
Implementations that share one unit of work commit both record families
together in ``commit()``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from staffverify.models.user import UserVerificationState
from staffverify.models.verification import VerificationRequest


@dataclass(frozen=True)
class GpsFix:
    lat: float
    lng: float
    source: str = "exif"


@dataclass(frozen=True)
class Enrichment:
    """Fields the storage event processor may merge into a request."""

    object_path: str
    has_gps: bool
    gps: Optional[GpsFix] = None
    photo_redacted_url: Optional[str] = None
    parsed_at: Optional[datetime] = None


class VerificationRequestRepository(ABC):
    @abstractmethod
    async def add(self, request: VerificationRequest) -> VerificationRequest: ...

    @abstractmethod
    async def get(self, request_id: str) -> Optional[VerificationRequest]: ...

    @abstractmethod
    async def list_recent_for_user(self, user_id: str, limit: int) -> list[VerificationRequest]:
        """Newest first by ``submitted_at``."""

    @abstractmethod
    async def list_all_for_user(self, user_id: str) -> list[VerificationRequest]:
        """Full history, newest first by ``submitted_at``."""

    @abstractmethod
    async def list_page(
        self, status: Optional[str] = None, offset: int = 0, limit: int = 20
    ) -> list[VerificationRequest]: ...

    @abstractmethod
    async def count(self, status: Optional[str] = None) -> int: ...

    @abstractmethod
    async def find_by_photo_path(self, photo_path: str) -> Optional[VerificationRequest]: ...

    @abstractmethod
    async def user_ids(self) -> list[str]:
        """Distinct user ids that have at least one request."""

    @abstractmethod
    async def merge_enrichment(self, request_id: str, enrichment: Enrichment) -> Optional[VerificationRequest]:
        """Merge enrichment without touching claimant or admin fields."""

    @abstractmethod
    async def decide(
        self,
        request_id: str,
        status: str,
        reviewed_at: datetime,
        notes: str,
        reviewer_id: Optional[str],
    ) -> Optional[VerificationRequest]:
        """Move a request out of ``pending`` in one conditional write.

        Returns None when the request is gone or no longer pending, so at
        most one of several concurrent decisions can succeed.
        """

    @abstractmethod
    async def delete(self, request_id: str) -> bool: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...


class UserStateRepository(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserVerificationState]: ...

    @abstractmethod
    async def get_or_create(
        self,
        user_id: str,
        email: str = "",
        display_name: str = "",
        store_name: str = "",
    ) -> UserVerificationState: ...

    @abstractmethod
    async def mark_pending(self, user_id: str, submitted_at: datetime) -> UserVerificationState: ...

    @abstractmethod
    async def apply_decision(
        self, user_id: str, status: str, decided_at: datetime, request_id: str
    ) -> UserVerificationState: ...

    @abstractmethod
    async def list_all(self) -> list[UserVerificationState]: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...
