"""
Submitter: validates and enqueues proof jobs without duplicating work.

Order of checks in ``submit``:
1. Validate subject/trait/threshold (ValidationError, never enqueued)
2. An equivalent job already queued or processing -> return it unchanged
3. A cached artifact for the fingerprint -> synthetic completed job
4. Otherwise create a queued job, register it in-flight and enqueue it
"""

from __future__ import annotations

from typing import Dict, Optional

import structlog

from ..channel import JOB_COMPLETED, NotificationChannel
from .cache import ResultCache
from .models import Fingerprint, Job, JobStatus, utc_now
from .store import JobStore
from .validation import validate_request

logger = structlog.get_logger()


class Submitter:
    def __init__(
        self,
        store: JobStore,
        cache: ResultCache,
        channel: Optional[NotificationChannel] = None,
        expected_durations: Optional[Dict[str, float]] = None,
        default_duration: float = 20.0,
    ):
        self.store = store
        self.cache = cache
        self.channel = channel
        self.expected_durations = expected_durations or {}
        self.default_duration = default_duration

    def estimated_time(self, trait_type: str) -> float:
        """Expected seconds to generate a proof for ``trait_type``."""
        return self.expected_durations.get(trait_type, self.default_duration)

    async def submit(
        self,
        subject_id: str,
        trait_type: str,
        threshold: Optional[float] = None,
        commitment_hash: Optional[str] = None,
    ) -> Job:
        """Submit a proof request.

        Raises:
            ValidationError: If the request is malformed
        """
        trait = validate_request(subject_id, trait_type, threshold)
        subject_id = subject_id.strip()
        fingerprint = Fingerprint(subject_id, trait, threshold)
        log = logger.bind(subject_id=subject_id, trait_type=trait, fingerprint=fingerprint.digest)

        existing = await self.store.find_inflight(fingerprint)
        if existing is not None:
            log.info("job_submit_deduplicated", job_id=existing.id)
            return existing

        cached = await self.cache.get(fingerprint)
        if cached is not None:
            job = self._cached_job(subject_id, trait, threshold, commitment_hash, cached)
            await self.store.save_new(job)
            log.info("job_submit_cache_hit", job_id=job.id, content_hash=cached.content_hash)
            if self.channel:
                self.channel.publish(
                    subject_id, JOB_COMPLETED, {"job_id": job.id, "progress": 100}
                )
            return job

        job = Job(
            subject_id=subject_id,
            trait_type=trait,
            threshold=threshold,
            commitment_hash=commitment_hash,
        )
        await self.store.save_new(job)

        owner = await self.store.register_inflight(job)
        if owner is not None:
            # Lost the race to an equivalent submission
            await self.store.discard(job.id)
            log.info("job_submit_deduplicated", job_id=owner.id)
            return owner

        await self.store.enqueue(job.id)
        log.info("job_queued", job_id=job.id)
        return job

    async def get_status(self, job_id: str) -> Job:
        """Fetch a job.

        Raises:
            NotFoundError: If the job never existed or has expired
        """
        return await self.store.get(job_id)

    async def queue_position(self, job_id: str) -> int:
        """1-based position of a queued job, 0 if it is not waiting."""
        job = await self.store.get(job_id)
        if job.status != JobStatus.QUEUED:
            return 0
        queued = await self.store.queued_ids()
        try:
            return queued.index(job_id) + 1
        except ValueError:
            return 0

    @staticmethod
    def _cached_job(subject_id, trait, threshold, commitment_hash, artifact) -> Job:
        now = utc_now()
        return Job(
            subject_id=subject_id,
            trait_type=trait,
            threshold=threshold,
            commitment_hash=commitment_hash or artifact.commitment_hash,
            status=JobStatus.COMPLETE,
            progress=100,
            stage="cached",
            result=artifact,
            created_at=now,
            started_at=now,
            completed_at=now,
        )

