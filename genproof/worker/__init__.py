"""
Worker Pool package.

Claims queued jobs, drives the Prover with bounded progress reporting and
persists results to the Pinning Service, transactional store and Result
Cache.
"""

from .pool import PERSISTENCE_FAILED, WorkerPool
from .loop import run_worker, serve
from .progress import ProgressReporter, ProgressTicker

__all__ = [
    "PERSISTENCE_FAILED",
    "ProgressReporter",
    "ProgressTicker",
    "WorkerPool",
    "run_worker",
    "serve",
]
