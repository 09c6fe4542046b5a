"""
Sources of subject input data for the worker's retrieval step.
"""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

from ..errors import NotFoundError
from ..pinning.models import SUBJECT_DATA

if TYPE_CHECKING:
    from ..pinning.service import PinningService


def commitment_of(data: Dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class SubjectInput:
    """Retrieved subject data plus the commitment it is bound to."""

    data: Dict[str, Any]
    commitment_hash: str


class InputSource(ABC):
    """Abstract base class for subject data retrieval."""

    @abstractmethod
    async def fetch(
        self, subject_id: str, commitment_hash: Optional[str] = None
    ) -> SubjectInput:
        """Return the subject's data.

        Raises:
            NotFoundError: If no data exists for the subject/commitment
        """
        pass


class StaticInputSource(InputSource):
    """Subject data held in memory, keyed by subject id."""

    def __init__(self, records: Optional[Dict[str, Dict[str, Any]]] = None):
        self.records = dict(records or {})

    def put(self, subject_id: str, data: Dict[str, Any]) -> None:
        self.records[subject_id] = data

    async def fetch(
        self, subject_id: str, commitment_hash: Optional[str] = None
    ) -> SubjectInput:
        data = self.records.get(subject_id)
        if data is None:
            raise NotFoundError("Subject data", subject_id)
        return SubjectInput(data=data, commitment_hash=commitment_of(data))


class PinnedInputSource(InputSource):
    """Subject data previously pinned with ``PinningService.pin_subject_data``.

    Records are read from the transactional store, so data pinned by one
    process (the API or CLI) resolves in another (a worker).
    """

    def __init__(self, pinning: "PinningService"):
        self.pinning = pinning

    async def fetch(
        self, subject_id: str, commitment_hash: Optional[str] = None
    ) -> SubjectInput:
        if commitment_hash:
            record = await self.pinning.find_by_commitment(commitment_hash, SUBJECT_DATA)
        else:
            record = await self.pinning.latest_for_owner(subject_id, SUBJECT_DATA)

        if record is None or record.owner_id != subject_id:
            raise NotFoundError("Subject commitment", commitment_hash or subject_id)

        payload = await self.pinning.get(record.content_id)
        if not isinstance(payload, dict):
            raise NotFoundError("Subject data", record.content_id)
        return SubjectInput(data=payload, commitment_hash=record.commitment_hash)
