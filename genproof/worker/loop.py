"""
Long-running worker process: builds services, runs the pool until a stop
signal arrives, then drains.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from ..config import Settings, load_settings
from ..logging_config import configure_logging
from ..services import build_services

logger = structlog.get_logger()


async def serve(settings: Settings, stop: Optional[asyncio.Event] = None) -> Dict[str, Any]:
    """Run a worker pool until ``stop`` is set or SIGINT/SIGTERM is received.

    Returns:
        Final pool statistics
    """
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    services = build_services(settings)
    pool = services.worker_pool()
    try:
        await pool.run_until(stop)
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        await services.close()
    return await pool.stats()


def run_worker(
    concurrency: Optional[int] = None,
    poll_interval: Optional[float] = None,
) -> Dict[str, Any]:
    """Blocking entry point used by the CLI and ``python -m genproof.worker``."""
    overrides: Dict[str, Any] = {}
    if concurrency:
        overrides["worker_concurrency"] = concurrency
    if poll_interval:
        overrides["worker_poll_interval"] = poll_interval
    settings = load_settings(**overrides)
    configure_logging(settings.log_level, settings.log_format)

    logger.info(
        "worker_process_starting",
        concurrency=settings.worker_concurrency,
        prover=settings.prover_backend,
    )
    return asyncio.run(serve(settings))
