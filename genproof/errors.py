"""
Error taxonomy for the proof pipeline.

Every error carries a stable code for programmatic handling and a
human-readable message.

- ValidationError: malformed trait/threshold/input, never retried
- NotFoundError: unknown job, artifact or content id
- TransientIOError: network or storage hiccup, retried internally
- ProverError: generation or verification failure, terminal for the job
- ReconciliationError: ledger event could not be applied, redelivered
"""

from __future__ import annotations

from typing import Optional


class GenproofError(Exception):
    """
    Base error for the pipeline.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
    """

    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code or self.default_code
        self.message = message
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "error": self.message,
            "code": self.code,
        }


class ValidationError(GenproofError):
    default_code = "VALIDATION_FAILED"


class NotFoundError(GenproofError):
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} {identifier} not found"
        super().__init__(message)


class TransientIOError(GenproofError):
    default_code = "TRANSIENT_IO"


class ProverError(GenproofError):
    default_code = "PROVER_FAILED"


class ReconciliationError(GenproofError):
    default_code = "RECONCILIATION_FAILED"


class InvalidTransitionError(GenproofError):
    """Raised when a job status change would move backwards."""

    default_code = "INVALID_TRANSITION"
