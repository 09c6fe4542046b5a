"""
Prover interface.

A prover turns a validated genetic marker into a proof artifact. It is an
opaque capability: the pipeline only relies on the request/output shapes
below and on ``ProverError`` for typed failures.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..jobs.validation import GeneticMarker

# Called with (percent, stage) while generation is running
ProgressCallback = Callable[[int, Optional[str]], Awaitable[None]]


@dataclass
class ProofRequest:
    """Input passed to a prover for one job."""

    job_id: str
    subject_id: str
    trait_type: str
    marker: GeneticMarker
    threshold: Optional[float] = None


@dataclass
class ProofOutput:
    """What a prover produces for a successful generation."""

    content_hash: str
    public_inputs: Dict[str, Any] = field(default_factory=dict)
    verification_key: str = ""
    status: str = "completed"
    chain_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "public_inputs": self.public_inputs,
            "verification_key": self.verification_key,
            "status": self.status,
            "chain_ref": self.chain_ref,
        }


class Prover(ABC):
    """Abstract base class for proof generators."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Prover name for logging and identification."""
        pass

    @abstractmethod
    async def generate(
        self,
        request: ProofRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProofOutput:
        """Generate a proof.

        Args:
            request: Validated marker and optional threshold
            on_progress: Optional callback for real generation progress

        Returns:
            ProofOutput for the request

        Raises:
            ProverError: If generation fails
        """
        pass

    @abstractmethod
    async def verify(self, output: ProofOutput) -> bool:
        """Check a produced proof. Returns False if it does not verify."""
        pass

    async def close(self) -> None:
        pass
