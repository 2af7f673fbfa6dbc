"""Detect and repair drift between users and their request history.

A user's verification state is a projection of their requests: whatever
happened last, a submission or a decision, sets it. Drift can still appear
through admin deletes, manual edits, or a write that lost a race, so a
periodic pass compares the projection with the stored state, audits every
mismatch and repairs the ones that history can explain. It also lists raw
uploads that never got a record.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from staffverify.config import Settings, settings as default_settings
from staffverify.core.exceptions import StateDivergenceError
from staffverify.models.user import UserVerificationState
from staffverify.models.verification import VerificationRequest
from staffverify.repositories.sql import SqlUserStateRepository, SqlVerificationRequestRepository
from staffverify.services import audit_service
from staffverify.storage.base import ObjectStore

logger = logging.getLogger(__name__)


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class ProjectedState:
    status: str
    request_id: str
    at: datetime


@dataclass(frozen=True)
class Divergence:
    user_id: str
    expected: Optional[str]
    actual: str
    reason: str
    repairable: bool


def project_state(history: list[VerificationRequest]) -> Optional[ProjectedState]:
    """The user state implied by ``history``; None when there is no history."""
    latest: Optional[ProjectedState] = None
    for request in history:
        events = [("pending", _as_utc(request.submitted_at))]
        if request.status in ("approved", "rejected") and request.reviewed_at is not None:
            events.append((request.status, _as_utc(request.reviewed_at)))
        for status, at in events:
            if at is None:
                continue
            # Ties go to the decision, which always follows its own submission.
            if latest is None or at > latest.at or (at == latest.at and status != "pending"):
                latest = ProjectedState(status=status, request_id=request.id, at=at)
    return latest


def expected_state(history: list[VerificationRequest]) -> Optional[str]:
    projected = project_state(history)
    return projected.status if projected else None


def compare(
    user_id: str,
    user: Optional[UserVerificationState],
    projected: Optional[ProjectedState],
) -> Optional[Divergence]:
    actual = user.verification_status if user is not None else "not_submitted"
    expected = projected.status if projected else None

    if projected is None:
        if actual != "not_submitted":
            return Divergence(user_id, None, actual, "history_missing", repairable=False)
        return None
    if expected != actual:
        return Divergence(user_id, expected, actual, "status_mismatch", repairable=True)
    if user is not None and bool(user.verified) != (actual == "approved"):
        return Divergence(user_id, expected, actual, "verified_flag_mismatch", repairable=True)
    return None


class ReconciliationService:
    def __init__(self, db: AsyncSession, store: Optional[ObjectStore] = None, cfg: Settings = default_settings):
        self.db = db
        self.store = store
        self.cfg = cfg
        self.requests = SqlVerificationRequestRepository(db)
        self.users = SqlUserStateRepository(db)

    async def _check_user(self, user_id: str, user: Optional[UserVerificationState]):
        history = await self.requests.list_all_for_user(user_id)
        projected = project_state(history)
        return projected, compare(user_id, user, projected)

    async def find_divergences(self) -> list[Divergence]:
        users = {u.id: u for u in await self.users.list_all()}
        user_ids = sorted(set(users) | set(await self.requests.user_ids()))
        found = []
        for user_id in user_ids:
            _, divergence = await self._check_user(user_id, users.get(user_id))
            if divergence is not None:
                found.append(divergence)
        return found

    async def assert_user_consistent(self, user_id: str) -> None:
        _, divergence = await self._check_user(user_id, await self.users.get(user_id))
        if divergence is not None:
            raise StateDivergenceError(
                user_id, divergence.expected, divergence.actual, divergence.reason,
            )

    async def reconcile(self, repair: bool = True) -> dict:
        """Audit every divergence at critical severity and repair what history explains."""
        users = {u.id: u for u in await self.users.list_all()}
        user_ids = sorted(set(users) | set(await self.requests.user_ids()))
        divergences = []
        repaired = 0

        for user_id in user_ids:
            projected, divergence = await self._check_user(user_id, users.get(user_id))
            if divergence is None:
                continue
            divergences.append(divergence)
            logger.error(
                "Verification state divergence for user %s: expected=%s actual=%s (%s)",
                user_id, divergence.expected, divergence.actual, divergence.reason,
            )
            will_repair = repair and divergence.repairable and projected is not None
            await audit_service.log_event(
                self.db,
                "verification.state_divergence",
                subject_user_id=user_id,
                request_id=projected.request_id if projected else None,
                details={**asdict(divergence), "repaired": will_repair},
                severity="critical",
            )
            if will_repair:
                await self._repair(user_id, projected)
                repaired += 1

        await self.requests.commit()
        if divergences:
            logger.warning("Reconciliation: %d divergence(s), %d repaired", len(divergences), repaired)
        return {
            "checked": len(user_ids),
            "divergences": [asdict(d) for d in divergences],
            "repaired": repaired,
        }

    async def _repair(self, user_id: str, projected: ProjectedState) -> None:
        if projected.status == "pending":
            await self.users.mark_pending(user_id, projected.at)
        else:
            await self.users.apply_decision(user_id, projected.status, projected.at, projected.request_id)
        logger.info("Repaired user %s to %s from request %s", user_id, projected.status, projected.request_id)

    async def find_orphaned_uploads(
        self, older_than: Optional[datetime] = None, remove: bool = False
    ) -> list[str]:
        """Raw uploads with no request pointing at them.

        Only objects created before ``older_than`` count, so uploads whose
        record is still being written are left alone.
        """
        if self.store is None:
            return []
        cutoff = older_than or (
            datetime.now(timezone.utc) - timedelta(seconds=self.cfg.orphan_upload_grace_seconds)
        )
        cutoff = _as_utc(cutoff)

        orphans = []
        for path in await asyncio.to_thread(self.store.list_paths, self.cfg.verification_prefix):
            stored = await asyncio.to_thread(self.store.stat, path)
            if stored is None or _as_utc(stored.time_created) >= cutoff:
                continue
            if await self.requests.find_by_photo_path(path) is not None:
                continue
            orphans.append(path)

        for path in orphans:
            logger.warning("Orphaned verification upload: %s", path)
            if remove:
                await asyncio.to_thread(self.store.delete, path)
                await audit_service.log_event(
                    self.db,
                    "verification.orphan_removed",
                    details={"photo_path": path},
                    severity="warning",
                )
        if remove and orphans:
            await self.requests.commit()
        return orphans
