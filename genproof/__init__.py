"""
GenProof core

Asynchronous proof generation pipeline: job queue and bounded worker pool,
result cache, content-addressed pinning and ledger event reconciliation.
"""

import importlib.metadata

__version__ = importlib.metadata.version("genproof-core")

from .errors import (
    GenproofError,
    NotFoundError,
    ProverError,
    ReconciliationError,
    TransientIOError,
    ValidationError,
)
from .services import Services, build_services

__all__ = [
    "GenproofError",
    "NotFoundError",
    "ProverError",
    "ReconciliationError",
    "Services",
    "TransientIOError",
    "ValidationError",
    "build_services",
]
