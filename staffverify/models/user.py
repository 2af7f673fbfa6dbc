"""Verification subset of the user entity."""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String

from staffverify.database import Base


def utcnow():
    return datetime.now(timezone.utc)


USER_STATUSES = ("not_submitted", "pending", "approved", "rejected")


class UserVerificationState(Base):
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)  # principal id from the identity provider
    email = Column(String(255), default="")
    display_name = Column(String(255), default="")
    store_name = Column(String(255), default="")

    # Saved store location, used for location scoring
    store_lat = Column(Float, nullable=True)
    store_lng = Column(Float, nullable=True)

    verification_status = Column(String(20), nullable=False, default="not_submitted")
    verified = Column(Boolean, nullable=False, default=False)  # == (verification_status == "approved")
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    last_verification_submission = Column(DateTime(timezone=True), nullable=True)
    last_decided_request_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_users_verification_status", "verification_status"),
    )
