"""
Job Store: TTL-bounded job records in the key/value backend.

Keys:
    job:<jobId>              serialized Job, fixed TTL
    inflight:<fingerprint>   id of the job currently queued/processing for
                             an equivalent request, same TTL
    queue:jobs               FIFO of job ids waiting for a worker

All mutations are compare-and-set against the record that was read, so
concurrent workers can never both claim the same job.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog

from ..errors import InvalidTransitionError, NotFoundError
from ..kv import KeyValueStore
from .models import Fingerprint, Job, JobStatus

logger = structlog.get_logger()

JOB_QUEUE = "queue:jobs"

# CAS retries before giving up on a contended record
MAX_CAS_ATTEMPTS = 16


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


class JobStore:
    """Durable, TTL-bounded record of job lifecycle state."""

    def __init__(self, kv: KeyValueStore, ttl_seconds: int = 3600):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    async def get(self, job_id: str) -> Job:
        """Fetch a job.

        Raises:
            NotFoundError: If the job never existed or has expired
        """
        raw = await self.kv.get(job_key(job_id))
        if raw is None:
            raise NotFoundError("Job", job_id)
        return Job.from_json(raw)

    async def find(self, job_id: str) -> Optional[Job]:
        raw = await self.kv.get(job_key(job_id))
        return Job.from_json(raw) if raw is not None else None

    async def save_new(self, job: Job) -> None:
        """Persist a freshly created job record."""
        await self.kv.set(job_key(job.id), job.to_json(), ttl=self.ttl_seconds)

    async def discard(self, job_id: str) -> None:
        await self.kv.delete(job_key(job_id))

    async def find_inflight(self, fingerprint: Fingerprint) -> Optional[Job]:
        """Return the queued/processing job for an equivalent request, if any."""
        job_id = await self.kv.get(fingerprint.inflight_key)
        if job_id is None:
            return None
        job = await self.find(job_id)
        if job is None or not job.status.is_active:
            return None
        return job

    async def register_inflight(self, job: Job) -> Optional[Job]:
        """Mark ``job`` as the in-flight job for its fingerprint.

        Returns:
            None if ``job`` now owns the fingerprint, otherwise the active job
            that already owns it.
        """
        key = job.fingerprint.inflight_key
        for _ in range(MAX_CAS_ATTEMPTS):
            if await self.kv.set_if_absent(key, job.id, ttl=self.ttl_seconds):
                return None

            current_id = await self.kv.get(key)
            if current_id is None:
                continue
            if current_id == job.id:
                return None

            current = await self.find(current_id)
            if current is not None and current.status.is_active:
                return current

            # Stale pointer to a finished or expired job: take it over
            if await self.kv.compare_and_set(key, current_id, job.id):
                return None

        raise InvalidTransitionError(
            f"could not register in-flight job for {job.fingerprint.digest}"
        )

    async def enqueue(self, job_id: str) -> None:
        await self.kv.enqueue(JOB_QUEUE, job_id)

    async def next_queued(self, timeout: float) -> Optional[str]:
        """Pop the next job id, waiting up to ``timeout`` seconds."""
        return await self.kv.dequeue(JOB_QUEUE, timeout)

    async def queued_ids(self) -> list:
        return await self.kv.queue_items(JOB_QUEUE)

    async def update(self, job_id: str, mutate: Callable[[Job], Job]) -> Job:
        """Apply ``mutate`` to the stored job atomically.

        ``mutate`` may raise InvalidTransitionError to reject the change.

        Raises:
            NotFoundError: If the job has expired
            InvalidTransitionError: If the change is rejected or the record
                stays contended
        """
        key = job_key(job_id)
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = await self.kv.get(key)
            if raw is None:
                raise NotFoundError("Job", job_id)
            current = Job.from_json(raw)
            updated = mutate(current)
            if await self.kv.compare_and_set(key, raw, updated.to_json()):
                return updated
        raise InvalidTransitionError(f"job {job_id} update contended")

    async def claim(self, job_id: str, worker_id: str) -> Optional[Job]:
        """Atomically move a queued job to processing for ``worker_id``.

        Returns:
            The claimed job, or None if it is gone or another worker won
        """

        def _claim(job: Job) -> Job:
            claimed = job.transition(JobStatus.PROCESSING)
            return claimed.model_copy(update={"worker_id": worker_id})

        try:
            return await self.update(job_id, _claim)
        except NotFoundError:
            logger.warning("job_claim_expired", job_id=job_id, worker_id=worker_id)
            return None
        except InvalidTransitionError:
            logger.debug("job_claimed_elsewhere", job_id=job_id, worker_id=worker_id)
            return None

    async def set_progress(
        self, job_id: str, progress: int, stage: Optional[str] = None
    ) -> Job:
        return await self.update(job_id, lambda job: job.with_progress(progress, stage))

    async def complete(self, job_id: str, artifact) -> Job:
        def _complete(job: Job) -> Job:
            done = job.with_progress(100, "complete").transition(JobStatus.COMPLETE)
            return done.model_copy(update={"result": artifact})

        return await self.update(job_id, _complete)

    async def fail(self, job_id: str, error: str, code: str) -> Job:
        def _fail(job: Job) -> Job:
            failed = job.transition(JobStatus.FAILED)
            return failed.model_copy(update={"error": error, "error_code": code})

        return await self.update(job_id, _fail)
