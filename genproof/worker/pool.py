"""
Worker Pool: C concurrent workers pulling jobs from the Job Store queue.

Per job:
1. Claim: atomic queued -> processing (at most one worker per job)
2. Retrieve input (10%)
3. Validate input against domain constraints (20%, 30%)
4. Re-check the Result Cache, then invoke the Prover (30% -> 80%)
5. Verify the produced proof (80%)
6. Pin, persist and cache the artifact (90%, then 100% on completion)

Prover and validation failures fail the job immediately. Transient
failures while persisting are retried with exponential backoff; once
exhausted the job fails. Nothing raised while processing a job stops the
pool.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..channel import NotificationChannel
from ..db.base import Database
from ..db.repositories import ArtifactRepository
from ..errors import (
    GenproofError,
    InvalidTransitionError,
    NotFoundError,
    ProverError,
    TransientIOError,
    ValidationError,
)
from ..jobs.cache import ResultCache
from ..jobs.inputs import InputSource, SubjectInput
from ..jobs.models import Artifact, Job
from ..jobs.store import JobStore
from ..jobs.validation import extract_marker
from ..pinning.service import PinningService
from ..prover.base import ProofOutput, ProofRequest, Prover
from ..retry import Sleep, retry_async
from .progress import Clock, ProgressReporter, ProgressTicker

logger = structlog.get_logger()

PERSISTENCE_FAILED = "PERSISTENCE_FAILED"


class WorkerPool:
    """Bounded pool of asyncio workers.

    Args:
        store: Job Store holding job records and the queue
        cache: Result Cache consulted before the prover runs
        prover: Prover implementation
        inputs: Source of subject input data
        pinning: Pinning Service for proof payloads
        channel: Notification channel for progress and failures
        settings: Settings providing concurrency, intervals and timeouts
        database: Transactional store for artifacts (optional)
        sleep: Sleep used for persistence backoff (injected in tests)
        clock: Monotonic clock for progress throttling and interpolation
    """

    def __init__(
        self,
        store: JobStore,
        cache: ResultCache,
        prover: Prover,
        inputs: InputSource,
        pinning: Optional[PinningService],
        channel: Optional[NotificationChannel],
        settings,
        database: Optional[Database] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        pool_id: Optional[str] = None,
    ):
        self.store = store
        self.cache = cache
        self.prover = prover
        self.inputs = inputs
        self.pinning = pinning
        self.channel = channel
        self.settings = settings
        self.database = database
        self.sleep = sleep
        self.clock = clock
        self.pool_id = pool_id or f"pool-{uuid.uuid4().hex[:8]}"
        self.concurrency = settings.worker_concurrency

        self.logger = logger.bind(pool_id=self.pool_id)
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._stats_task: Optional[asyncio.Task] = None
        self._active: Dict[str, str] = {}
        self.processed = 0
        self.failed = 0
        self.peak_active = 0

    # Lifecycle

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    def start(self) -> None:
        """Spawn the worker tasks."""
        if self._tasks:
            return
        self._stopping.clear()
        for index in range(self.concurrency):
            name = f"{self.pool_id}-w{index}"
            self._tasks.append(asyncio.create_task(self._worker(name), name=name))
        if self.settings.stats_interval > 0:
            self._stats_task = asyncio.create_task(self._log_stats_periodically())
        self.logger.info(
            "worker_pool_started",
            concurrency=self.concurrency,
            prover=self.prover.name,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop taking jobs and drain in-flight work.

        Jobs still running after ``timeout`` seconds are cancelled and left
        in the processing state until their record expires.
        """
        timeout = self.settings.shutdown_timeout if timeout is None else timeout
        self._stopping.set()
        self.logger.info("worker_pool_stopping", active=len(self._active))

        if self._stats_task is not None:
            self._stats_task.cancel()
            await asyncio.gather(self._stats_task, return_exceptions=True)
            self._stats_task = None

        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        if pending:
            self.logger.warning(
                "worker_pool_drain_timeout",
                abandoned_jobs=sorted(self._active),
                timeout=timeout,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks = []
        self.logger.info(
            "worker_pool_stopped", processed=self.processed, failed=self.failed
        )

    async def run_until(self, stop_event: asyncio.Event) -> None:
        """Run the pool until ``stop_event`` is set, then drain."""
        self.start()
        await stop_event.wait()
        await self.stop()

    async def stats(self) -> Dict[str, Any]:
        try:
            queued = len(await self.store.queued_ids())
        except TransientIOError:
            queued = None
        return {
            "pool_id": self.pool_id,
            "concurrency": self.concurrency,
            "active": len(self._active),
            "active_jobs": sorted(self._active),
            "queued": queued,
            "processed": self.processed,
            "failed": self.failed,
            "peak_active": self.peak_active,
        }

    async def _log_stats_periodically(self) -> None:
        while not self._stopping.is_set():
            await asyncio.sleep(self.settings.stats_interval)
            self.logger.debug("worker_pool_stats", **(await self.stats()))

    # Worker loop

    async def _worker(self, name: str) -> None:
        log = self.logger.bind(worker_id=name)
        log.debug("worker_started")

        while not self._stopping.is_set():
            try:
                job_id = await self.store.next_queued(self.settings.worker_poll_interval)
            except TransientIOError as e:
                log.warning("queue_unavailable", error=e.message)
                await asyncio.sleep(self.settings.worker_poll_interval)
                continue

            if job_id is None:
                continue

            if self._stopping.is_set():
                # Popped while shutting down: hand it back for the next run
                try:
                    await self.store.enqueue(job_id)
                except TransientIOError as e:
                    log.error("job_requeue_failed", job_id=job_id, error=e.message)
                break

            try:
                job = await self.store.claim(job_id, name)
            except TransientIOError as e:
                log.error("job_claim_failed", job_id=job_id, error=e.message)
                continue
            if job is None:
                continue

            self._active[job.id] = name
            self.peak_active = max(self.peak_active, len(self._active))
            try:
                await self.process(job)
            except Exception as e:
                log.exception("job_process_crashed", job_id=job.id, error=str(e))
            finally:
                self._active.pop(job.id, None)

        log.debug("worker_stopped")

    # Job processing

    async def process(self, job: Job) -> Optional[Job]:
        """Run one claimed job to a terminal state.

        Returns:
            The terminal job record, or None if it could not be written
        """
        log = self.logger.bind(
            job_id=job.id, subject_id=job.subject_id, trait_type=job.trait_type
        )
        log.info("job_claimed", worker_id=job.worker_id)
        reporter = ProgressReporter(
            self.store,
            self.channel,
            job,
            interval=self.settings.progress_interval,
            clock=self.clock,
        )

        try:
            await reporter.advance(10, "retrieving_input")
            subject = await self._fetch_input(job)

            await reporter.advance(20, "validating")
            marker = extract_marker(subject.data, job.trait_type)
            await reporter.advance(30, "generating")

            cached = await self.cache.get(job.fingerprint)
            if cached is not None:
                log.info("job_cache_hit", content_hash=cached.content_hash)
                return await self._complete(job, cached, reporter, log)

            request = ProofRequest(
                job_id=job.id,
                subject_id=job.subject_id,
                trait_type=job.trait_type,
                marker=marker,
                threshold=job.threshold,
            )
            output = await self._generate(request, reporter)
            await reporter.advance(80, "verifying")

            await self._verify(output)
            await reporter.advance(90, "persisting")

            artifact = await self._persist(job, subject, output, log)
            return await self._complete(job, artifact, reporter, log)

        except ProverError as e:
            log.warning("job_prover_failed", code=e.code, error=e.message)
            return await self._fail(job, e.message, e.code, reporter, log)
        except (ValidationError, NotFoundError) as e:
            log.warning("job_input_rejected", code=e.code, error=e.message)
            return await self._fail(job, e.message, e.code, reporter, log)
        except TransientIOError as e:
            log.error("job_io_failed", error=e.message)
            return await self._fail(job, e.message, e.code, reporter, log)
        except GenproofError as e:
            log.error("job_failed", code=e.code, error=e.message)
            return await self._fail(job, e.message, e.code, reporter, log)
        except Exception as e:
            log.exception("job_unexpected_error", error=str(e))
            return await self._fail(job, str(e), "INTERNAL_ERROR", reporter, log)

    async def _fetch_input(self, job: Job) -> SubjectInput:
        try:
            return await asyncio.wait_for(
                self.inputs.fetch(job.subject_id, job.commitment_hash),
                timeout=self.settings.input_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientIOError("input retrieval timed out") from e

    async def _generate(self, request: ProofRequest, reporter: ProgressReporter) -> ProofOutput:
        expected = self.settings.expected_duration(request.trait_type)
        ticker = ProgressTicker(
            reporter,
            expected_duration=expected,
            interval=self.settings.progress_interval,
            clock=self.clock,
        )
        async with ticker:
            try:
                return await asyncio.wait_for(
                    self.prover.generate(request, on_progress=ticker.report),
                    timeout=self.settings.prover_timeout,
                )
            except asyncio.TimeoutError as e:
                raise ProverError(
                    f"prover exceeded {self.settings.prover_timeout}s",
                    code="PROVER_TIMEOUT",
                ) from e

    async def _verify(self, output: ProofOutput) -> None:
        try:
            valid = await asyncio.wait_for(
                self.prover.verify(output), timeout=self.settings.prover_timeout
            )
        except asyncio.TimeoutError as e:
            raise ProverError("proof verification timed out", code="PROVER_TIMEOUT") from e
        if not valid:
            raise ProverError("Proof verification failed", code="PROOF_INVALID")

    async def _persist(
        self, job: Job, subject: SubjectInput, output: ProofOutput, log
    ) -> Artifact:
        payload = {
            "content_hash": output.content_hash,
            "public_inputs": output.public_inputs,
            "verification_key": output.verification_key,
            "trait_type": job.trait_type,
        }
        content_id: Optional[str] = None

        async def _store() -> Artifact:
            nonlocal content_id
            # Pinned once; a retry after a store failure reuses the identifier
            if self.pinning is not None and content_id is None:
                pinned = await self.pinning.pin(
                    payload,
                    owner_id=job.subject_id,
                    commitment_hash=subject.commitment_hash,
                )
                content_id = pinned.content_id
                if not pinned.durable:
                    log.warning("artifact_pin_degraded", content_id=content_id)

            artifact = Artifact.build(
                subject_id=job.subject_id,
                trait_type=job.trait_type,
                content_hash=output.content_hash,
                public_inputs=output.public_inputs,
                verification_key=output.verification_key,
                commitment_hash=job.commitment_hash or subject.commitment_hash,
                retention_hours=self.settings.artifact_retention_hours,
                content_id=content_id,
                chain_ref=output.chain_ref,
            )
            stored = await self._save_artifact(artifact)
            if not await self.cache.put(job.fingerprint, stored):
                # An equivalent job cached first; converge on its artifact
                cached = await self.cache.get(job.fingerprint)
                if cached is not None:
                    return cached
            return stored

        try:
            return await retry_async(
                _store,
                attempts=self.settings.persist_attempts,
                base_delay=self.settings.persist_backoff_seconds,
                sleep=self.sleep,
                label="persist_artifact",
            )
        except TransientIOError as e:
            raise TransientIOError(
                f"persistence failed after {self.settings.persist_attempts} attempts: "
                f"{e.message}",
                code=PERSISTENCE_FAILED,
            ) from e

    async def _save_artifact(self, artifact: Artifact) -> Artifact:
        if self.database is None:
            return artifact

        def _save() -> Artifact:
            with self.database.transaction() as session:
                stored, _ = ArtifactRepository(session).save_if_absent(artifact)
                return stored

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(_save), timeout=self.settings.store_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientIOError("artifact store timed out") from e
        except SQLAlchemyError as e:
            raise TransientIOError(f"artifact store failed: {e}") from e

    async def _complete(
        self, job: Job, artifact: Artifact, reporter: ProgressReporter, log
    ) -> Job:
        done = await self.store.complete(job.id, artifact)
        self.processed += 1
        reporter.completed(done)
        log.info("job_completed", content_hash=artifact.content_hash)
        return done

    async def _fail(
        self, job: Job, error: str, code: str, reporter: ProgressReporter, log
    ) -> Optional[Job]:
        self.failed += 1
        failed = None
        try:
            failed = await self.store.fail(job.id, error, code)
        except (NotFoundError, InvalidTransitionError, TransientIOError) as e:
            log.error("job_fail_record_failed", error=str(e))
        reporter.failed(error, code)
        return failed
