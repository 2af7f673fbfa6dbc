"""SHA-256 hash chain utilities for the tamper-evident audit trail."""

import hashlib


def compute_audit_hash(
    prev_hash: str | None,
    event_type: str,
    actor_id: str | None,
    details_json: str,
    severity: str,
    timestamp_iso: str,
) -> str:
    payload = "|".join([
        prev_hash or "GENESIS",
        event_type,
        actor_id or "SYSTEM",
        details_json,
        severity,
        timestamp_iso,
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
