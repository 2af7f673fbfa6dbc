"""Admin review of verification requests.

Approve and reject write the request, the user's verification state and an
audit entry in one transaction, so the two records never disagree after a
decision. A failed commit rolls all three back. The move out of ``pending``
is one conditional UPDATE, so of two concurrent decisions only one lands
and the other gets a 409.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from staffverify.core.exceptions import (
    InvalidRequestStateError,
    RequestNotFoundError,
    TransientIOError,
    ValidationError,
)
from staffverify.models.verification import REQUEST_STATUSES, VerificationRequest
from staffverify.repositories.base import UserStateRepository, VerificationRequestRepository
from staffverify.repositories.sql import SqlUserStateRepository, SqlVerificationRequestRepository
from staffverify.services import audit_service
from staffverify.services.submission_service import request_to_dict

logger = logging.getLogger(__name__)


class ReviewService:
    def __init__(
        self,
        db: AsyncSession,
        requests: Optional[VerificationRequestRepository] = None,
        users: Optional[UserStateRepository] = None,
    ):
        self.db = db
        self.requests = requests or SqlVerificationRequestRepository(db)
        self.users = users or SqlUserStateRepository(db)

    async def get_request(self, request_id: str) -> VerificationRequest:
        request = await self.requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    async def list_requests(
        self, status: Optional[str] = None, page: int = 1, page_size: int = 20
    ) -> dict:
        """Paginated requests, newest ``submittedAt`` first."""
        if status and status not in REQUEST_STATUSES:
            raise ValidationError(f"Unknown status '{status}'")
        total = await self.requests.count(status)
        entries = await self.requests.list_page(status, (page - 1) * page_size, page_size)
        return {
            "requests": [request_to_dict(r) for r in entries],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    async def pending_count(self) -> int:
        return await self.requests.count("pending")

    async def approve(self, request_id: str, notes: str = "", reviewer_id: Optional[str] = None) -> VerificationRequest:
        return await self._decide(request_id, "approved", notes or "", reviewer_id)

    async def reject(self, request_id: str, notes: str, reviewer_id: Optional[str] = None) -> VerificationRequest:
        if not notes or not notes.strip():
            raise ValidationError("A reason is required to reject a verification request")
        return await self._decide(request_id, "rejected", notes.strip(), reviewer_id)

    async def _decide(
        self, request_id: str, decision: str, notes: str, reviewer_id: Optional[str]
    ) -> VerificationRequest:
        request = await self.get_request(request_id)
        if request.status != "pending":
            raise InvalidRequestStateError(request_id, request.status)

        now = datetime.now(timezone.utc)
        decided = None
        try:
            decided = await self.requests.decide(request_id, decision, now, notes, reviewer_id)
            if decided is not None:
                await self.users.apply_decision(decided.user_id, decision, now, decided.id)
                await audit_service.log_event(
                    self.db,
                    f"verification.{decision}",
                    actor_id=reviewer_id,
                    subject_user_id=decided.user_id,
                    request_id=decided.id,
                    details={"notes": notes},
                )
                await self.requests.commit()
        except SQLAlchemyError as e:
            await self.requests.rollback()
            logger.error("Decision %s on request %s rolled back: %s", decision, request_id, e)
            raise TransientIOError("Could not record the decision, please retry") from e

        if decided is None:
            # Another reviewer decided (or deleted) it after the read above.
            await self.requests.rollback()
            current = await self.requests.get(request_id)
            if current is None:
                raise RequestNotFoundError(request_id)
            logger.warning(
                "Decision %s on request %s lost to a concurrent %s", decision, request_id, current.status,
            )
            raise InvalidRequestStateError(request_id, current.status)

        logger.info(
            "Verification %s: request=%s user=%s by=%s",
            decision, decided.id, decided.user_id, reviewer_id or "-",
        )
        return decided

    async def delete(self, request_id: str, actor_id: Optional[str] = None) -> None:
        """Remove a request permanently. The user's state is left as is."""
        request = await self.get_request(request_id)
        user_id, status, photo_path = request.user_id, request.status, request.photo_path
        try:
            await self.requests.delete(request_id)
            await audit_service.log_event(
                self.db,
                "verification.deleted",
                actor_id=actor_id,
                subject_user_id=user_id,
                request_id=request_id,
                details={"status": status, "photo_path": photo_path},
                severity="warning",
            )
            await self.requests.commit()
        except SQLAlchemyError as e:
            await self.requests.rollback()
            logger.error("Delete of request %s rolled back: %s", request_id, e)
            raise TransientIOError("Could not delete the request, please retry") from e

        logger.warning("Verification request %s (user=%s, %s) deleted by %s", request_id, user_id, status, actor_id or "-")
