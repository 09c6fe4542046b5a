"""
Service container.

Every shared handle (key/value backend, stores, channel, prover, pinning,
database) is built once here and passed explicitly to the components that
use it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from .channel import NotificationChannel
from .config import Settings, load_settings
from .db.base import Database
from .jobs.cache import ResultCache
from .jobs.inputs import InputSource, PinnedInputSource
from .jobs.store import JobStore
from .jobs.submitter import Submitter
from .kv import KeyValueStore, create_kv_store
from .pinning.service import PinningService
from .prover import Prover, create_prover

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    kv: KeyValueStore
    job_store: JobStore
    cache: ResultCache
    channel: NotificationChannel
    pinning: PinningService
    prover: Prover
    inputs: InputSource
    database: Database
    submitter: Submitter

    def worker_pool(self, **kwargs):
        from .worker.pool import WorkerPool

        kwargs.setdefault("database", self.database)
        return WorkerPool(
            self.job_store,
            self.cache,
            self.prover,
            self.inputs,
            self.pinning,
            self.channel,
            self.settings,
            **kwargs,
        )

    def reconciler(self, ledger, **kwargs):
        from .reconciler.reconciler import EventReconciler

        return EventReconciler.from_settings(
            self.settings, self.database, ledger, self.channel, **kwargs
        )

    async def close(self) -> None:
        self.channel.close()
        await self.prover.close()
        await self.pinning.close()
        await self.kv.close()
        self.database.dispose()


def build_services(
    settings: Optional[Settings] = None,
    *,
    kv: Optional[KeyValueStore] = None,
    prover: Optional[Prover] = None,
    inputs: Optional[InputSource] = None,
    pinning: Optional[PinningService] = None,
    database: Optional[Database] = None,
    channel: Optional[NotificationChannel] = None,
) -> Services:
    """Construct all services from settings. Keyword overrides replace parts."""
    settings = settings or load_settings()

    kv = kv or create_kv_store(settings.kv_url, timeout=settings.kv_timeout)
    channel = channel or NotificationChannel()
    job_store = JobStore(kv, ttl_seconds=settings.job_ttl_seconds)
    cache = ResultCache(kv, ttl_seconds=settings.result_ttl_seconds)
    database = database or Database(settings.database_url, timeout=settings.store_timeout)
    pinning = pinning or PinningService.from_settings(settings, database=database)
    prover = prover or create_prover(settings)
    inputs = inputs or PinnedInputSource(pinning)
    submitter = Submitter(
        job_store,
        cache,
        channel=channel,
        expected_durations=settings.trait_durations,
        default_duration=settings.default_trait_duration,
    )

    logger.debug(
        "services_built",
        kv_url=settings.kv_url.split("@")[-1],
        prover=prover.name,
        environment=settings.environment,
    )
    return Services(
        settings=settings,
        kv=kv,
        job_store=job_store,
        cache=cache,
        channel=channel,
        pinning=pinning,
        prover=prover,
        inputs=inputs,
        database=database,
        submitter=submitter,
    )
