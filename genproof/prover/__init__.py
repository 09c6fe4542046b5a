"""Prover capability: interface, implementations and factory."""
from __future__ import annotations

from .base import ProgressCallback, ProofOutput, ProofRequest, Prover
from .http import HttpProver
from .mock import MockProver


def create_prover(settings) -> Prover:
    """Build the configured prover.

    Raises:
        ValueError: If the backend is unknown or misconfigured
    """
    backend = settings.prover_backend
    if backend == "mock":
        return MockProver()
    if backend == "http":
        if not settings.prover_url:
            raise ValueError("prover_url is required for the http prover")
        return HttpProver(settings.prover_url, timeout=settings.prover_timeout)
    raise ValueError(
        f"Unsupported prover backend: {backend}. Supported: mock, http"
    )


__all__ = [
    "HttpProver",
    "MockProver",
    "ProgressCallback",
    "ProofOutput",
    "ProofRequest",
    "Prover",
    "create_prover",
]
