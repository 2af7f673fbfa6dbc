"""SQLAlchemy-backed record store.

Both repositories are built on the same ``AsyncSession`` by the services that
use them, so a single ``commit()`` covers request and user writes atomically.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from staffverify.models.user import UserVerificationState
from staffverify.models.verification import VerificationRequest
from staffverify.repositories.base import Enrichment, UserStateRepository, VerificationRequestRepository

logger = logging.getLogger(__name__)


def _insert_ignoring_conflicts(db: AsyncSession):
    """INSERT into ``users`` that skips an id which already exists."""
    if db.get_bind().dialect.name == "postgresql":
        stmt = postgresql_insert(UserVerificationState)
    else:
        stmt = sqlite_insert(UserVerificationState)
    return stmt.on_conflict_do_nothing(index_elements=[UserVerificationState.id])


class SqlVerificationRequestRepository(VerificationRequestRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, request: VerificationRequest) -> VerificationRequest:
        self.db.add(request)
        await self.db.flush()
        return request

    async def get(self, request_id: str) -> Optional[VerificationRequest]:
        result = await self.db.execute(
            select(VerificationRequest).where(VerificationRequest.id == request_id)
        )
        return result.scalar_one_or_none()

    async def list_recent_for_user(self, user_id: str, limit: int) -> list[VerificationRequest]:
        result = await self.db.execute(
            select(VerificationRequest)
            .where(VerificationRequest.user_id == user_id)
            .order_by(VerificationRequest.submitted_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_all_for_user(self, user_id: str) -> list[VerificationRequest]:
        result = await self.db.execute(
            select(VerificationRequest)
            .where(VerificationRequest.user_id == user_id)
            .order_by(VerificationRequest.submitted_at.desc())
        )
        return list(result.scalars().all())

    async def list_page(
        self, status: Optional[str] = None, offset: int = 0, limit: int = 20
    ) -> list[VerificationRequest]:
        stmt = select(VerificationRequest).order_by(VerificationRequest.submitted_at.desc())
        if status:
            stmt = stmt.where(VerificationRequest.status == status)
        result = await self.db.execute(stmt.offset(offset).limit(limit))
        return list(result.scalars().all())

    async def count(self, status: Optional[str] = None) -> int:
        stmt = select(func.count(VerificationRequest.id))
        if status:
            stmt = stmt.where(VerificationRequest.status == status)
        return (await self.db.execute(stmt)).scalar() or 0

    async def find_by_photo_path(self, photo_path: str) -> Optional[VerificationRequest]:
        result = await self.db.execute(
            select(VerificationRequest)
            .where(VerificationRequest.photo_path == photo_path)
            .order_by(VerificationRequest.submitted_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def user_ids(self) -> list[str]:
        result = await self.db.execute(select(VerificationRequest.user_id).distinct())
        return [row[0] for row in result.all()]

    async def merge_enrichment(self, request_id: str, enrichment: Enrichment) -> Optional[VerificationRequest]:
        request = await self.get(request_id)
        if request is None:
            return None

        # A located fix is never downgraded by a later parse that found nothing.
        if not request.has_gps:
            request.has_gps = enrichment.has_gps
        if enrichment.gps is not None:
            request.gps_lat = enrichment.gps.lat
            request.gps_lng = enrichment.gps.lng
            request.gps_source = enrichment.gps.source
        if enrichment.photo_redacted_url:
            request.photo_redacted_url = enrichment.photo_redacted_url
        if not request.photo_path:
            request.photo_path = enrichment.object_path
        # First successful parse wins so redelivered events do not move the timestamp.
        if request.exif_parsed_at is None and enrichment.parsed_at is not None:
            request.exif_parsed_at = enrichment.parsed_at

        await self.db.flush()
        return request

    async def decide(
        self,
        request_id: str,
        status: str,
        reviewed_at: datetime,
        notes: str,
        reviewer_id: Optional[str],
    ) -> Optional[VerificationRequest]:
        result = await self.db.execute(
            update(VerificationRequest)
            .where(VerificationRequest.id == request_id, VerificationRequest.status == "pending")
            .values(status=status, reviewed_at=reviewed_at, admin_notes=notes, reviewed_by=reviewer_id)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) == 0:
            return None
        request = await self.get(request_id)
        await self.db.refresh(request)
        return request

    async def delete(self, request_id: str) -> bool:
        result = await self.db.execute(
            delete(VerificationRequest).where(VerificationRequest.id == request_id)
        )
        return (result.rowcount or 0) > 0

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()


class SqlUserStateRepository(UserStateRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> Optional[UserVerificationState]:
        result = await self.db.execute(
            select(UserVerificationState).where(UserVerificationState.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        user_id: str,
        email: str = "",
        display_name: str = "",
        store_name: str = "",
    ) -> UserVerificationState:
        user = await self.get(user_id)
        if user is None:
            # Two first submissions can race here; the loser's insert is a no-op.
            result = await self.db.execute(
                _insert_ignoring_conflicts(self.db).values(
                    id=user_id,
                    email=email,
                    display_name=display_name,
                    store_name=store_name,
                    verification_status="not_submitted",
                    verified=False,
                )
            )
            if result.rowcount:
                logger.info("Created verification state for user %s", user_id)
            user = await self.get(user_id)
        else:
            # Profile fields follow the identity provider; verification fields never do.
            user.email = email or user.email
            user.display_name = display_name or user.display_name
            user.store_name = store_name or user.store_name
        return user

    async def mark_pending(self, user_id: str, submitted_at: datetime) -> UserVerificationState:
        user = await self.get_or_create(user_id)
        user.verification_status = "pending"
        user.verified = False
        user.last_verification_submission = submitted_at
        await self.db.flush()
        return user

    async def apply_decision(
        self, user_id: str, status: str, decided_at: datetime, request_id: str
    ) -> UserVerificationState:
        if status not in ("approved", "rejected"):
            raise ValueError(f"Not a terminal decision: {status}")

        user = await self.get_or_create(user_id)
        user.verification_status = status
        user.verified = status == "approved"
        if status == "approved":
            user.approved_at = decided_at
        else:
            user.rejected_at = decided_at
        user.last_decided_request_id = request_id
        await self.db.flush()
        return user

    async def list_all(self) -> list[UserVerificationState]:
        result = await self.db.execute(select(UserVerificationState))
        return list(result.scalars().all())

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
