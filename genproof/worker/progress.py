"""
Progress reporting for a single job.

``ProgressReporter`` writes every accepted value to the Job Store and pushes
it to the notification channel at most once per ``interval`` seconds.
Terminal values are always pushed.

``ProgressTicker`` is scoped to one prover call. While the call runs it
raises progress from ``floor`` towards ``ceiling`` in proportion to elapsed
time over the trait's expected duration. Progress reported by the prover
itself replaces the interpolated value but is clamped to the same bounds.
Once the prover has reported, interpolation stops and ticks only flush.
Leaving the ``async with`` block always stops the ticker.
"""
from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Callable, Optional

import structlog

from ..channel import JOB_COMPLETED, JOB_FAILED, PROGRESS, NotificationChannel
from ..jobs.models import Job
from ..jobs.store import JobStore

logger = structlog.get_logger()

Clock = Callable[[], float]


class ProgressReporter:
    def __init__(
        self,
        store: JobStore,
        channel: Optional[NotificationChannel],
        job: Job,
        interval: float = 0.5,
        clock: Clock = time.monotonic,
    ):
        self.store = store
        self.channel = channel
        self.job_id = job.id
        self.subject_id = job.subject_id
        self.interval = interval
        self.clock = clock
        self.progress = job.progress
        self.stage = job.stage
        self._published = -1
        self._published_at: Optional[float] = None
        self._lock = asyncio.Lock()

    async def advance(self, progress: int, stage: Optional[str] = None) -> bool:
        """Record ``progress`` if it is higher than the current value."""
        progress = min(int(progress), 100)
        async with self._lock:
            if progress <= self.progress:
                return False
            await self.store.set_progress(self.job_id, progress, stage)
            self.progress = progress
            self.stage = stage or self.stage
            self._publish_throttled()
            return True

    def flush(self) -> None:
        """Push the latest value if it has not been pushed yet."""
        if self.progress > self._published:
            self._publish_throttled()

    def _publish_throttled(self) -> None:
        now = self.clock()
        if self._published_at is not None and now - self._published_at < self.interval:
            return
        self._publish_progress(now)

    def _publish_progress(self, now: float) -> None:
        self._published = self.progress
        self._published_at = now
        if self.channel is None:
            return
        payload = {"job_id": self.job_id, "progress": self.progress}
        if self.stage:
            payload["stage"] = self.stage
        self.channel.publish(self.subject_id, PROGRESS, payload)

    def completed(self, job: Job) -> None:
        self.progress = job.progress
        self.stage = job.stage
        self._publish_progress(self.clock())
        if self.channel is not None:
            self.channel.publish(
                self.subject_id,
                JOB_COMPLETED,
                {
                    "job_id": self.job_id,
                    "content_hash": job.result.content_hash if job.result else None,
                },
            )

    def failed(self, error: str, code: str) -> None:
        if self.channel is not None:
            self.channel.publish(
                self.subject_id,
                JOB_FAILED,
                {"job_id": self.job_id, "error": error, "code": code},
            )


class ProgressTicker:
    def __init__(
        self,
        reporter: ProgressReporter,
        expected_duration: float,
        interval: float = 0.5,
        floor: int = 30,
        ceiling: int = 80,
        clock: Clock = time.monotonic,
    ):
        self.reporter = reporter
        self.expected_duration = max(expected_duration, 0.001)
        self.interval = interval
        self.floor = floor
        self.ceiling = ceiling
        self.clock = clock
        self._started: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._reported = False

    def value_at(self, elapsed: float) -> int:
        fraction = min(max(elapsed, 0.0) / self.expected_duration, 1.0)
        return self.floor + int((self.ceiling - self.floor) * fraction)

    def bounded(self, progress: int) -> int:
        return max(self.floor, min(self.ceiling, int(progress)))

    async def report(self, progress: int, stage: Optional[str] = None) -> None:
        """Progress callback handed to the prover."""
        self._reported = True
        await self.reporter.advance(self.bounded(progress), stage or "generating")

    async def tick(self) -> None:
        if not self._reported:
            elapsed = self.clock() - self._started
            await self.reporter.advance(self.value_at(elapsed), "generating")
        self.reporter.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "progress_tick_failed", job_id=self.reporter.job_id, error=str(e)
                )

    async def __aenter__(self) -> "ProgressTicker":
        self._started = self.clock()
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
