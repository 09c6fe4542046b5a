"""
Pinning records and result types.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

PAYLOAD = "payload"
SUBJECT_DATA = "subject_data"


@dataclass
class PinRecord:
    """Where a payload was pinned and whether the pin is durable.

    ``durable=False`` marks a degraded-mode identifier that only lives in
    the local ephemeral store. ``kind`` separates subject data, which input
    sources resolve, from other pinned payloads.
    """

    content_id: str
    owner_id: Optional[str]
    commitment_hash: str
    durable: bool
    kind: str = PAYLOAD
    pinned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    verified_at: Optional[datetime] = None


@dataclass
class PinResult:
    content_id: str
    durable: bool
    record: PinRecord


class MaintenanceOutcome(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class MaintenanceResult:
    """Outcome of a best-effort maintenance call.

    ``degraded`` means the call was handled without the remote service
    (e.g. answered from the local store); ``failed`` means it could not be
    answered at all. Neither is raised.
    """

    outcome: MaintenanceOutcome
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == MaintenanceOutcome.OK

    @classmethod
    def success(cls, value: Any = None) -> "MaintenanceResult":
        return cls(MaintenanceOutcome.OK, value)

    @classmethod
    def degraded(cls, value: Any = None, error: Optional[str] = None) -> "MaintenanceResult":
        return cls(MaintenanceOutcome.DEGRADED, value, error)

    @classmethod
    def failed(cls, error: str, value: Any = None) -> "MaintenanceResult":
        return cls(MaintenanceOutcome.FAILED, value, error)

    def to_dict(self) -> Dict[str, Any]:
        return {"outcome": self.outcome.value, "value": self.value, "error": self.error}
