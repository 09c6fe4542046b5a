"""
Prover backed by a remote proof server over HTTP.

Expected endpoints:
    POST /proofs          {trait_type, marker, threshold} -> ProofOutput JSON
    POST /proofs/verify   ProofOutput JSON -> {"valid": bool}
"""
from __future__ import annotations

from typing import Optional

import httpx
import structlog

from ..errors import ProverError
from .base import ProgressCallback, ProofOutput, ProofRequest, Prover

logger = structlog.get_logger()


class HttpProver(Prover):
    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout
        )

    @property
    def name(self) -> str:
        return "http"

    async def generate(
        self,
        request: ProofRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProofOutput:
        body = {
            "job_id": request.job_id,
            "trait_type": request.trait_type,
            "marker": request.marker.to_dict(),
            "threshold": request.threshold,
        }
        try:
            response = await self._client.post("/proofs", json=body)
        except httpx.TimeoutException as e:
            raise ProverError(f"prover timed out: {e}", code="PROVER_TIMEOUT") from e
        except httpx.HTTPError as e:
            raise ProverError(f"prover unreachable: {e}") from e

        if response.status_code >= 400:
            raise ProverError(
                f"prover returned {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
            return ProofOutput(
                content_hash=data["content_hash"],
                public_inputs=data.get("public_inputs") or {},
                verification_key=data.get("verification_key", ""),
                status=data.get("status", "completed"),
                chain_ref=data.get("chain_ref"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ProverError(f"malformed prover response: {e}") from e

    async def verify(self, output: ProofOutput) -> bool:
        try:
            response = await self._client.post("/proofs/verify", json=output.to_dict())
        except httpx.HTTPError as e:
            logger.warning("prover_verify_unreachable", error=str(e))
            raise ProverError(f"verification unreachable: {e}") from e
        if response.status_code >= 400:
            return False
        try:
            return bool(response.json().get("valid"))
        except (ValueError, AttributeError, TypeError) as e:
            raise ProverError(
                f"malformed verify response: {e}", code="PROOF_INVALID"
            ) from e

    async def close(self) -> None:
        await self._client.aclose()
