"""
Jobs package: models, Job Store, Result Cache, Submitter and input sources.
"""

from .cache import ResultCache
from .inputs import InputSource, PinnedInputSource, StaticInputSource, SubjectInput
from .models import Artifact, Fingerprint, Job, JobStatus
from .store import JOB_QUEUE, JobStore
from .submitter import Submitter
from .validation import SUPPORTED_TRAITS, GeneticMarker, extract_marker, validate_request

__all__ = [
    "Artifact",
    "Fingerprint",
    "GeneticMarker",
    "InputSource",
    "JOB_QUEUE",
    "Job",
    "JobStatus",
    "JobStore",
    "PinnedInputSource",
    "ResultCache",
    "StaticInputSource",
    "SubjectInput",
    "SUPPORTED_TRAITS",
    "Submitter",
    "extract_marker",
    "validate_request",
]
