"""
SQLAlchemy models for artifacts and reconciled ledger state.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from .base import Base


def _iso(value):
    return value.isoformat() if value else None


class ArtifactModel(Base):
    """Completed proof artifact. Content-addressed by content_hash."""

    __tablename__ = "artifacts"

    id = Column(String(26), primary_key=True)
    subject_id = Column(String(128), nullable=False, index=True)
    trait_type = Column(String(32), nullable=False, index=True)
    content_hash = Column(String(130), nullable=False, unique=True)
    public_inputs = Column(JSON, nullable=False, default=dict)
    verification_key = Column(Text, nullable=False)
    chain_ref = Column(String(130), nullable=True)
    commitment_hash = Column(String(130), nullable=False, index=True)
    content_id = Column(String(256), nullable=True)
    status = Column(String(32), nullable=False, default="completed")

    # Set by the reconciler on VerificationComplete
    chain_verified = Column(Boolean, nullable=False, default=False)
    verification_tx = Column(String(130), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "trait_type": self.trait_type,
            "content_hash": self.content_hash,
            "public_inputs": self.public_inputs,
            "verification_key": self.verification_key,
            "chain_ref": self.chain_ref,
            "commitment_hash": self.commitment_hash,
            "content_id": self.content_id,
            "status": self.status,
            "chain_verified": self.chain_verified,
            "verification_tx": self.verification_tx,
            "verified_at": _iso(self.verified_at),
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }


class VerificationAuditModel(Base):
    """One row per VerificationComplete transaction."""

    __tablename__ = "verification_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(130), nullable=False, unique=True)
    block_number = Column(Integer, nullable=False)
    subject_ref = Column(String(128), nullable=False, index=True)
    verifier_ref = Column(String(128), nullable=True)
    artifact_ref = Column(String(130), nullable=True)
    trait_type = Column(String(32), nullable=True)
    event_timestamp = Column(DateTime(timezone=True), nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class SubjectCounterModel(Base):
    """Named per-subject counters (e.g. verification_count)."""

    __tablename__ = "subject_counters"

    subject_id = Column(String(128), primary_key=True)
    counter = Column(String(64), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class AccessGrantModel(Base):
    """Access a subject granted to a grantee. Unique per pair."""

    __tablename__ = "access_grants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(128), nullable=False)
    grantee_id = Column(String(128), nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    # Ordering key of the last applied event
    last_block = Column(Integer, nullable=False, default=0)
    last_tx = Column(String(130), nullable=False, default="")

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("subject_id", "grantee_id", name="uq_access_grants_pair"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "grantee_id": self.grantee_id,
            "scopes": sorted(self.scopes or []),
            "expires_at": _iso(self.expires_at),
            "revoked": self.revoked,
            "revoked_at": _iso(self.revoked_at),
            "last_block": self.last_block,
            "last_tx": self.last_tx,
        }


class AccessRequestModel(Base):
    """A grantee's request for access, resolved by ledger events."""

    __tablename__ = "access_requests"

    id = Column(String(26), primary_key=True)
    subject_id = Column(String(128), nullable=False)
    requester_id = Column(String(128), nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    status = Column(
        Enum("pending", "approved", "denied", name="access_request_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    responded_at = Column(DateTime(timezone=True), nullable=True)
    resolved_tx = Column(String(130), nullable=True)

    __table_args__ = (
        Index("ix_access_requests_pair_status", "subject_id", "requester_id", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "requester_id": self.requester_id,
            "scopes": self.scopes,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "responded_at": _iso(self.responded_at),
            "resolved_tx": self.resolved_tx,
        }


class ArtifactSubmissionModel(Base):
    """One row per ArtifactSubmitted transaction."""

    __tablename__ = "artifact_submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(130), nullable=False, unique=True)
    block_number = Column(Integer, nullable=False)
    subject_ref = Column(String(128), nullable=False, index=True)
    artifact_ref = Column(String(130), nullable=True)
    trait_type = Column(String(32), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class TraitAggregateModel(Base):
    """Submission totals per trait type."""

    __tablename__ = "trait_aggregates"

    trait_type = Column(String(32), primary_key=True)
    submission_count = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=True)


class ReconcilerCursorModel(Base):
    """Highest ledger ordering key applied by a named consumer."""

    __tablename__ = "reconciler_cursor"

    name = Column(String(64), primary_key=True)
    block_number = Column(Integer, nullable=False, default=0)
    tx_hash = Column(String(130), nullable=False, default="")
    updated_at = Column(DateTime(timezone=True), nullable=True)


class PinRecordModel(Base):
    """Where a payload was pinned. durable=False marks a degraded-mode id."""

    __tablename__ = "pin_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content_id = Column(String(256), nullable=False, index=True)
    owner_id = Column(String(128), nullable=True)
    commitment_hash = Column(String(130), nullable=False, index=True)
    kind = Column(String(32), nullable=False, default="payload")
    durable = Column(Boolean, nullable=False, default=False)
    pinned_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    verified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_pin_records_owner_kind", "owner_id", "kind"),)
