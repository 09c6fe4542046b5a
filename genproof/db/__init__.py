"""
Database package: transactional store for artifacts and ledger state.
"""

from .base import Base, Database, get_database_url
from .models import (
    AccessGrantModel,
    AccessRequestModel,
    ArtifactModel,
    ArtifactSubmissionModel,
    PinRecordModel,
    ReconcilerCursorModel,
    SubjectCounterModel,
    TraitAggregateModel,
    VerificationAuditModel,
)
from .repositories import (
    ArtifactRepository,
    LedgerStateRepository,
    PinRecordRepository,
    to_artifact,
)

__all__ = [
    "Base",
    "Database",
    "get_database_url",
    "AccessGrantModel",
    "AccessRequestModel",
    "ArtifactModel",
    "ArtifactSubmissionModel",
    "PinRecordModel",
    "ReconcilerCursorModel",
    "SubjectCounterModel",
    "TraitAggregateModel",
    "VerificationAuditModel",
    "ArtifactRepository",
    "LedgerStateRepository",
    "PinRecordRepository",
    "to_artifact",
]
