"""
Job and Artifact models.

Job status moves forward only:

    queued -> processing -> complete | failed

Terminal jobs are immutable, and progress never decreases while a job is
processing.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, conint
from ulid import ULID

from ..errors import InvalidTransitionError


def generate_id() -> str:
    """Generate a lexicographically sortable identifier."""
    return str(ULID())


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.PROCESSING)


ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETE, JobStatus.FAILED},
    JobStatus.COMPLETE: set(),
    JobStatus.FAILED: set(),
}


@dataclass(frozen=True)
class Fingerprint:
    """Identifies equivalent proof requests."""

    subject_id: str
    trait_type: str
    threshold: Optional[float] = None

    @property
    def threshold_token(self) -> str:
        if self.threshold is None:
            return "none"
        return repr(float(self.threshold))

    @property
    def digest(self) -> str:
        raw = f"{self.subject_id}\x1f{self.trait_type}\x1f{self.threshold_token}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def cache_key(self) -> str:
        key = f"artifact:{self.subject_id}:{self.trait_type}"
        if self.threshold is not None:
            key += f":{self.threshold_token}"
        return key

    @property
    def inflight_key(self) -> str:
        return f"inflight:{self.digest}"


class Artifact(BaseModel):
    """Completed proof. Immutable once persisted, addressed by content_hash."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    subject_id: str
    trait_type: str
    content_hash: str
    public_inputs: Dict[str, Any] = Field(default_factory=dict)
    verification_key: str
    chain_ref: Optional[str] = None
    commitment_hash: str
    content_id: Optional[str] = None
    status: str = "completed"
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    @classmethod
    def build(
        cls,
        subject_id: str,
        trait_type: str,
        content_hash: str,
        public_inputs: Dict[str, Any],
        verification_key: str,
        commitment_hash: str,
        retention_hours: int = 24,
        content_id: Optional[str] = None,
        chain_ref: Optional[str] = None,
    ) -> "Artifact":
        created_at = utc_now()
        return cls(
            subject_id=subject_id,
            trait_type=trait_type,
            content_hash=content_hash,
            public_inputs=public_inputs,
            verification_key=verification_key,
            commitment_hash=commitment_hash,
            content_id=content_id,
            chain_ref=chain_ref,
            created_at=created_at,
            expires_at=created_at + timedelta(hours=retention_hours),
        )


class Job(BaseModel):
    """Lifecycle record of one proof generation request."""

    id: str = Field(default_factory=generate_id)
    subject_id: str
    trait_type: str
    threshold: Optional[float] = None
    commitment_hash: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    progress: conint(ge=0, le=100) = 0
    stage: Optional[str] = None
    result: Optional[Artifact] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    worker_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.subject_id, self.trait_type, self.threshold)

    def transition(self, status: JobStatus) -> "Job":
        """Return a copy moved to ``status``.

        Raises:
            InvalidTransitionError: If the move is not forward
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"job {self.id}: {self.status.value} -> {status.value} not allowed"
            )
        updates: Dict[str, Any] = {"status": status}
        if status == JobStatus.PROCESSING:
            updates["started_at"] = utc_now()
        if status.is_terminal:
            updates["completed_at"] = utc_now()
        return self.model_copy(update=updates)

    def with_progress(self, progress: int, stage: Optional[str] = None) -> "Job":
        """Return a copy with progress raised to ``progress``.

        Raises:
            InvalidTransitionError: If the job is not processing or the
                value would decrease
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidTransitionError(
                f"job {self.id}: progress update while {self.status.value}"
            )
        if progress < self.progress:
            raise InvalidTransitionError(
                f"job {self.id}: progress {self.progress} -> {progress} decreases"
            )
        return self.model_copy(
            update={"progress": min(progress, 100), "stage": stage or self.stage}
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls.model_validate_json(raw)

    def to_dict(self) -> Dict[str, Any]:
        return json.loads(self.model_dump_json())
