from staffverify.models.audit_log import AuditLog
from staffverify.models.user import UserVerificationState
from staffverify.models.verification import VerificationRequest

__all__ = [
    "AuditLog",
    "UserVerificationState",
    "VerificationRequest",
]
