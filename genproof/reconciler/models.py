"""
Ledger event model.

Events are ordered by (block_number, tx_hash). The same event may be
delivered more than once.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LedgerEventType(str, Enum):
    VERIFICATION_COMPLETE = "VerificationComplete"
    ACCESS_GRANTED = "AccessGranted"
    ACCESS_REVOKED = "AccessRevoked"
    ARTIFACT_SUBMITTED = "ArtifactSubmitted"


class LedgerEvent(BaseModel):
    """A normalized event from the external ledger.

    Accepts both snake_case field names and the ledger's camelCase keys
    (``blockNumber``, ``txHash``, ``subjectRef``, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: LedgerEventType
    block_number: int = Field(ge=0, alias="blockNumber")
    tx_hash: str = Field(alias="txHash", pattern=r"^0x[0-9a-fA-F]+$")
    subject_ref: str = Field(alias="subjectRef", min_length=1)
    counterparty_ref: Optional[str] = Field(default=None, alias="counterpartyRef")
    trait_type: Optional[str] = Field(default=None, alias="traitType")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tx_hash")
    @classmethod
    def _lower_hash(cls, value: str) -> str:
        return value.lower()

    @property
    def key(self) -> Tuple[int, str]:
        """Ordering key."""
        return (self.block_number, self.tx_hash)

    @property
    def entity_key(self) -> str:
        """Logical entity whose events must be applied in order."""
        if self.type in (LedgerEventType.ACCESS_GRANTED, LedgerEventType.ACCESS_REVOKED):
            return f"grant:{self.subject_ref}:{self.counterparty_ref or ''}"
        return f"subject:{self.subject_ref}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "subject_ref": self.subject_ref,
            "counterparty_ref": self.counterparty_ref,
            "trait_type": self.trait_type,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }
