"""
Deterministic prover for development and tests.

The proof content is a hash over the request, so identical requests always
yield identical artifacts.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Optional

import structlog

from ..errors import ProverError
from .base import ProgressCallback, ProofOutput, ProofRequest, Prover

logger = structlog.get_logger()


class MockProver(Prover):
    """Hash-based stand-in for a real proving backend.

    Args:
        delay: Seconds to spend "generating" each proof
        steps: Number of progress callbacks emitted across the delay
        fail_traits: Trait types for which generation raises ProverError
    """

    def __init__(self, delay: float = 0.0, steps: int = 0, fail_traits=()):
        self.delay = delay
        self.steps = steps
        self.fail_traits = set(fail_traits)
        self.calls = 0

    @property
    def name(self) -> str:
        return "mock"

    async def generate(
        self,
        request: ProofRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProofOutput:
        self.calls += 1
        logger.debug(
            "mock_proof_started",
            job_id=request.job_id,
            trait_type=request.trait_type,
        )

        if self.steps and on_progress is not None:
            for step in range(1, self.steps + 1):
                await asyncio.sleep(self.delay / self.steps)
                await on_progress(30 + (50 * step) // (self.steps + 1), "proving")
        elif self.delay:
            await asyncio.sleep(self.delay)

        if request.trait_type in self.fail_traits:
            raise ProverError(f"mock prover rejected {request.trait_type}")

        public_inputs = {
            "trait_type": request.trait_type,
            "marker": request.marker.value,
            "threshold": request.threshold,
        }
        digest = hashlib.sha256(
            json.dumps(
                {"subject_id": request.subject_id, **public_inputs},
                sort_keys=True,
                default=str,
            ).encode("utf-8")
        ).hexdigest()

        return ProofOutput(
            content_hash="0x" + digest,
            public_inputs=public_inputs,
            verification_key=f"vk_{request.trait_type.lower()}_mock",
            status="completed",
            chain_ref="0x" + hashlib.sha256(digest.encode("utf-8")).hexdigest(),
        )

    async def verify(self, output: ProofOutput) -> bool:
        return output.content_hash.startswith("0x") and bool(output.verification_key)
