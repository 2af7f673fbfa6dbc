"""Immutable audit logging with SHA-256 hash chain."""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staffverify.core.hashing import compute_audit_hash
from staffverify.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def log_event(
    db: AsyncSession,
    event_type: str,
    *,
    actor_id: str | None = None,
    subject_user_id: str | None = None,
    request_id: str | None = None,
    details: dict | None = None,
    severity: str = "info",
) -> AuditLog:
    """Append an entry to the chain. Flushes but never commits.

    Callers commit the entry together with the change it describes.
    """
    latest = await db.execute(
        select(AuditLog.entry_hash).order_by(AuditLog.created_at.desc()).limit(1)
    )
    prev_hash = latest.scalar_one_or_none()

    created_at = datetime.now(timezone.utc)
    details_json = json.dumps(details or {}, sort_keys=True, default=str)

    entry_hash = compute_audit_hash(
        prev_hash, event_type, actor_id, details_json, severity, created_at.isoformat(),
    )

    entry = AuditLog(
        event_type=event_type,
        actor_id=actor_id,
        subject_user_id=subject_user_id,
        request_id=request_id,
        details=details_json,
        severity=severity,
        prev_hash=prev_hash,
        entry_hash=entry_hash,
        created_at=created_at,
    )
    db.add(entry)
    await db.flush()
    return entry


async def verify_chain(db: AsyncSession) -> bool:
    """Recompute every entry hash in insertion order. False on the first break."""
    result = await db.execute(select(AuditLog).order_by(AuditLog.created_at.asc()))
    prev_hash = None
    for entry in result.scalars().all():
        created = entry.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        expected = compute_audit_hash(
            prev_hash, entry.event_type, entry.actor_id, entry.details,
            entry.severity, created.isoformat(),
        )
        if entry.prev_hash != prev_hash or entry.entry_hash != expected:
            logger.error("Audit chain broken at entry %s", entry.id)
            return False
        prev_hash = entry.entry_hash
    return True
