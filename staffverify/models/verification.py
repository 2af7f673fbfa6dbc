"""Verification requests: one row per employment-proof submission."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, Index, Integer, String, Text

from staffverify.database import Base


def utcnow():
    return datetime.now(timezone.utc)


REQUEST_STATUSES = ("pending", "approved", "rejected")


class VerificationRequest(Base):
    """Append-only history; the newest row by ``submitted_at`` is a user's current request."""

    __tablename__ = "verification_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Claim metadata (immutable after creation)
    user_id = Column(String(128), nullable=False)
    user_email = Column(String(255), default="")
    user_name = Column(String(255), default="")
    store_name = Column(String(255), default="")

    # Photo method
    photo_url = Column(Text, nullable=True)
    photo_path = Column(String(512), nullable=True)  # raw object path, reconciliation key
    photo_redacted_url = Column(Text, nullable=True)  # set only by the storage event processor
    file_metadata = Column(Text, default="{}")  # JSON: fileName, mimeType, size

    # Code method
    verification_code = Column(String(32), nullable=False)  # daily audit string, not a control
    brand_code = Column(String(128), default="")
    selected_brand = Column(String(128), default="")

    # Enrichment (storage event processor only)
    gps_lat = Column(Float, nullable=True)
    gps_lng = Column(Float, nullable=True)
    gps_source = Column(String(16), nullable=True)
    has_gps = Column(Boolean, nullable=True)
    exif_parsed_at = Column(DateTime(timezone=True), nullable=True)

    # Claimant-reported device location
    device_lat = Column(Float, nullable=True)
    device_lng = Column(Float, nullable=True)
    device_loc_obtained_at = Column(DateTime(timezone=True), nullable=True)

    # Location scoring
    auto_score = Column(Integer, nullable=True)
    score_reasons = Column(Text, default="[]")  # JSON list of reason codes
    distance_m = Column(Integer, nullable=True)
    loc_source = Column(String(16), nullable=True)  # device | exif

    # Review
    status = Column(String(20), nullable=False, default="pending")  # pending | approved | rejected
    admin_notes = Column(Text, default="")
    reviewed_by = Column(String(128), nullable=True)

    # Timestamps
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')", name="ck_verification_status"
        ),
        Index("idx_verification_user_submitted", "user_id", "submitted_at"),
        Index("idx_verification_status", "status"),
        Index("idx_verification_submitted", "submitted_at"),
        Index("idx_verification_photo_path", "photo_path"),
    )
