from staffverify.repositories.base import (
    Enrichment,
    GpsFix,
    UserStateRepository,
    VerificationRequestRepository,
)
from staffverify.repositories.sql import SqlUserStateRepository, SqlVerificationRequestRepository

__all__ = [
    "Enrichment",
    "GpsFix",
    "SqlUserStateRepository",
    "SqlVerificationRequestRepository",
    "UserStateRepository",
    "VerificationRequestRepository",
]
