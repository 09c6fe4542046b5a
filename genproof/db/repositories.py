"""
Database services for artifacts and reconciled ledger state.

Every method works inside the caller's session and never commits; the
caller owns the transaction (see ``Database.transaction``).
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..jobs.models import Artifact, generate_id
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

OrderingKey = Tuple[int, str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactRepository:
    """Service for persisted proof artifacts."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_content_hash(self, content_hash: str) -> Optional[ArtifactModel]:
        return (
            self.db.query(ArtifactModel)
            .filter(ArtifactModel.content_hash == content_hash)
            .first()
        )

    def save_if_absent(self, artifact: Artifact) -> Tuple[Artifact, bool]:
        """Insert ``artifact`` unless its content_hash already exists.

        Returns:
            (stored artifact, created) where the stored artifact is the
            existing row when one was already present
        """
        existing = self.get_by_content_hash(artifact.content_hash)
        if existing is not None:
            return to_artifact(existing), False

        row = ArtifactModel(
            id=artifact.id,
            subject_id=artifact.subject_id,
            trait_type=artifact.trait_type,
            content_hash=artifact.content_hash,
            public_inputs=artifact.public_inputs,
            verification_key=artifact.verification_key,
            chain_ref=artifact.chain_ref,
            commitment_hash=artifact.commitment_hash,
            content_id=artifact.content_id,
            status=artifact.status,
            created_at=artifact.created_at,
            expires_at=artifact.expires_at,
        )
        # A concurrent insert of the same hash raises IntegrityError here; the
        # caller retries and then finds the existing row.
        self.db.add(row)
        self.db.flush()
        return artifact, True

    def mark_chain_verified(self, content_hash: str, tx_hash: str) -> bool:
        row = self.get_by_content_hash(content_hash)
        if row is None:
            return False
        if not row.chain_verified:
            row.chain_verified = True
            row.verification_tx = tx_hash
            row.verified_at = _now()
        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete artifacts past their retention window."""
        return (
            self.db.query(ArtifactModel)
            .filter(ArtifactModel.expires_at < (now or _now()))
            .delete(synchronize_session=False)
        )


def to_artifact(row: ArtifactModel) -> Artifact:
    return Artifact(
        id=row.id,
        subject_id=row.subject_id,
        trait_type=row.trait_type,
        content_hash=row.content_hash,
        public_inputs=row.public_inputs or {},
        verification_key=row.verification_key,
        chain_ref=row.chain_ref,
        commitment_hash=row.commitment_hash,
        content_id=row.content_id,
        status=row.status,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


class LedgerStateRepository:
    """Service for state derived from ledger events."""

    def __init__(self, db: Session):
        self.db = db

    # Verification

    def record_verification(
        self,
        tx_hash: str,
        block_number: int,
        subject_ref: str,
        verifier_ref: Optional[str] = None,
        artifact_ref: Optional[str] = None,
        trait_type: Optional[str] = None,
        event_timestamp: Optional[datetime] = None,
    ) -> bool:
        """Append an audit row. Returns False if ``tx_hash`` was already recorded."""
        exists = (
            self.db.query(VerificationAuditModel.id)
            .filter(VerificationAuditModel.tx_hash == tx_hash)
            .first()
        )
        if exists is not None:
            return False
        self.db.add(
            VerificationAuditModel(
                tx_hash=tx_hash,
                block_number=block_number,
                subject_ref=subject_ref,
                verifier_ref=verifier_ref,
                artifact_ref=artifact_ref,
                trait_type=trait_type,
                event_timestamp=event_timestamp,
            )
        )
        self.db.flush()
        return True

    def increment_subject_counter(self, subject_id: str, counter: str, by: int = 1) -> int:
        row = self.db.get(SubjectCounterModel, (subject_id, counter))
        if row is None:
            row = SubjectCounterModel(subject_id=subject_id, counter=counter, value=0)
            self.db.add(row)
        row.value = (row.value or 0) + by
        row.updated_at = _now()
        self.db.flush()
        return row.value

    def get_subject_counter(self, subject_id: str, counter: str) -> int:
        row = self.db.get(SubjectCounterModel, (subject_id, counter))
        return row.value if row is not None else 0

    # Access grants

    def get_grant(self, subject_id: str, grantee_id: str) -> Optional[AccessGrantModel]:
        return (
            self.db.query(AccessGrantModel)
            .filter(
                AccessGrantModel.subject_id == subject_id,
                AccessGrantModel.grantee_id == grantee_id,
            )
            .first()
        )

    def list_grants(self, subject_id: str) -> List[AccessGrantModel]:
        return (
            self.db.query(AccessGrantModel)
            .filter(AccessGrantModel.subject_id == subject_id)
            .order_by(AccessGrantModel.grantee_id)
            .all()
        )

    def upsert_grant(
        self,
        subject_id: str,
        grantee_id: str,
        scopes: List[str],
        expires_at: Optional[datetime],
        key: OrderingKey,
    ) -> bool:
        """Last-write-wins upsert keyed by (subject_id, grantee_id).

        Returns False when this event or a later one has already been applied
        to the pair.
        """
        grant = self.get_grant(subject_id, grantee_id)
        if grant is None:
            grant = AccessGrantModel(subject_id=subject_id, grantee_id=grantee_id)
            self.db.add(grant)
        elif (grant.last_block, grant.last_tx) >= key:
            return False

        grant.scopes = sorted(set(scopes))
        grant.expires_at = expires_at
        grant.revoked = False
        grant.revoked_at = None
        grant.last_block, grant.last_tx = key
        grant.updated_at = _now()
        self.db.flush()
        return True

    def revoke_grant(self, subject_id: str, grantee_id: str, key: OrderingKey) -> bool:
        """Revoke the active grant for the pair. Returns False if there is none."""
        grant = self.get_grant(subject_id, grantee_id)
        if grant is None or grant.revoked:
            return False
        if (grant.last_block, grant.last_tx) >= key:
            return False

        grant.revoked = True
        grant.revoked_at = _now()
        grant.last_block, grant.last_tx = key
        grant.updated_at = _now()
        self.db.flush()
        return True

    # Access requests

    def create_access_request(
        self, subject_id: str, requester_id: str, scopes: Optional[List[str]] = None
    ) -> AccessRequestModel:
        request = AccessRequestModel(
            id=generate_id(),
            subject_id=subject_id,
            requester_id=requester_id,
            scopes=list(scopes or []),
            status="pending",
        )
        self.db.add(request)
        self.db.flush()
        return request

    def approve_pending_requests(
        self, subject_id: str, requester_id: str, tx_hash: str
    ) -> int:
        """Move pending requests for the pair to approved. Returns rows changed."""
        return (
            self.db.query(AccessRequestModel)
            .filter(
                AccessRequestModel.subject_id == subject_id,
                AccessRequestModel.requester_id == requester_id,
                AccessRequestModel.status == "pending",
            )
            .update(
                {
                    AccessRequestModel.status: "approved",
                    AccessRequestModel.responded_at: _now(),
                    AccessRequestModel.resolved_tx: tx_hash,
                },
                synchronize_session=False,
            )
        )

    def get_access_request(self, request_id: str) -> Optional[AccessRequestModel]:
        return self.db.get(AccessRequestModel, request_id)

    # Submissions and aggregates

    def record_submission(
        self,
        tx_hash: str,
        block_number: int,
        subject_ref: str,
        artifact_ref: Optional[str] = None,
        trait_type: Optional[str] = None,
    ) -> bool:
        exists = (
            self.db.query(ArtifactSubmissionModel.id)
            .filter(ArtifactSubmissionModel.tx_hash == tx_hash)
            .first()
        )
        if exists is not None:
            return False
        self.db.add(
            ArtifactSubmissionModel(
                tx_hash=tx_hash,
                block_number=block_number,
                subject_ref=subject_ref,
                artifact_ref=artifact_ref,
                trait_type=trait_type,
            )
        )
        self.db.flush()
        return True

    def increment_trait_aggregate(self, trait_type: str, by: int = 1) -> int:
        row = self.db.get(TraitAggregateModel, trait_type)
        if row is None:
            row = TraitAggregateModel(trait_type=trait_type, submission_count=0)
            self.db.add(row)
        row.submission_count = (row.submission_count or 0) + by
        row.last_updated = _now()
        self.db.flush()
        return row.submission_count

    def get_trait_aggregate(self, trait_type: str) -> int:
        row = self.db.get(TraitAggregateModel, trait_type)
        return row.submission_count if row is not None else 0

    # Cursor

    def get_cursor(self, name: str) -> Optional[OrderingKey]:
        row = self.db.get(ReconcilerCursorModel, name)
        if row is None:
            return None
        return (row.block_number, row.tx_hash)

    def advance_cursor(self, name: str, key: OrderingKey) -> bool:
        """Move the cursor forward to ``key``. Never moves it back."""
        row = self.db.get(ReconcilerCursorModel, name)
        if row is None:
            row = ReconcilerCursorModel(name=name, block_number=0, tx_hash="")
            self.db.add(row)
        elif (row.block_number, row.tx_hash) >= key:
            return False
        row.block_number, row.tx_hash = key
        row.updated_at = _now()
        self.db.flush()
        return True


class PinRecordRepository:
    """Service for pin records, shared by every process that pins or reads."""

    def __init__(self, db: Session):
        self.db = db

    def save(
        self,
        content_id: str,
        owner_id: Optional[str],
        commitment_hash: str,
        durable: bool,
        kind: str = "payload",
        pinned_at: Optional[datetime] = None,
        verified_at: Optional[datetime] = None,
    ) -> PinRecordModel:
        row = PinRecordModel(
            content_id=content_id,
            owner_id=owner_id,
            commitment_hash=commitment_hash,
            kind=kind,
            durable=durable,
            pinned_at=pinned_at or _now(),
            verified_at=verified_at,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def find_by_commitment(
        self, commitment_hash: str, kind: Optional[str] = None
    ) -> Optional[PinRecordModel]:
        query = self.db.query(PinRecordModel).filter(
            PinRecordModel.commitment_hash == commitment_hash
        )
        if kind is not None:
            query = query.filter(PinRecordModel.kind == kind)
        return query.order_by(PinRecordModel.id.desc()).first()

    def latest_for_owner(
        self, owner_id: str, kind: Optional[str] = None
    ) -> Optional[PinRecordModel]:
        query = self.db.query(PinRecordModel).filter(PinRecordModel.owner_id == owner_id)
        if kind is not None:
            query = query.filter(PinRecordModel.kind == kind)
        return query.order_by(PinRecordModel.id.desc()).first()

    def mark_verified(self, content_id: str, at: Optional[datetime] = None) -> int:
        return (
            self.db.query(PinRecordModel)
            .filter(PinRecordModel.content_id == content_id)
            .update(
                {PinRecordModel.verified_at: at or _now()},
                synchronize_session=False,
            )
        )
