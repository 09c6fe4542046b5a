"""Test configuration and fixtures."""

import asyncio
import itertools
import json
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio

from genproof.channel import NotificationChannel
from genproof.config import Settings, load_settings
from genproof.db.base import Database
from genproof.jobs.inputs import StaticInputSource
from genproof.kv import MemoryKeyValueStore
from genproof.pinning.service import PinningService
from genproof.prover.mock import MockProver
from genproof.services import Services, build_services

PIN_API = "https://api.pinata.test"
GATEWAYS = ["https://gw1.test/ipfs", "https://gw2.test/ipfs"]


def subject_data(
    risk_score: float = 0.2, confidence: float = 0.9, activity_score: float = 1.0
) -> Dict[str, Any]:
    return {
        "traits": {
            "BRCA1": {"risk_score": risk_score, "confidence": confidence},
            "BRCA2": {"risk_score": risk_score, "confidence": confidence},
        },
        "markers": {
            "BRCA1_185delAG": False,
            "BRCA2_5266dupC": True,
            "CYP2D6": {"activityScore": activity_score, "metabolizer": "normal"},
        },
    }


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakePinata:
    """httpx handler emulating a pinning API and read gateways.

    ``fail_writes`` POSTs return 500 before writes start succeeding.
    Gateways listed in ``down`` answer 503.
    """

    def __init__(self, fail_writes: int = 0):
        self.fail_writes = fail_writes
        self.pins: Dict[str, Any] = {}
        self.down: set = set()
        self.requests: List[httpx.Request] = []
        self._counter = itertools.count(1)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "api.pinata.test":
            if request.method == "POST" and path == "/pinning/pinJSONToIPFS":
                if self.fail_writes > 0:
                    self.fail_writes -= 1
                    return httpx.Response(500, json={"error": "upstream"})
                cid = f"bafy{next(self._counter):04d}"
                self.pins[cid] = json.loads(request.content)["pinataContent"]
                return httpx.Response(200, json={"IpfsHash": cid})
            if request.method == "GET" and path == "/data/pinList":
                cid = request.url.params.get("hashContains")
                if cid is None:
                    return httpx.Response(200, json={"count": len(self.pins), "rows": []})
                return httpx.Response(200, json={"count": 1 if cid in self.pins else 0})
            if request.method == "DELETE" and path.startswith("/pinning/unpin/"):
                cid = path.rsplit("/", 1)[-1]
                if self.pins.pop(cid, None) is None:
                    return httpx.Response(404)
                return httpx.Response(200)
            return httpx.Response(404)

        gateway = f"https://{request.url.host}/ipfs"
        if gateway in self.down:
            return httpx.Response(503)
        cid = path.rsplit("/", 1)[-1]
        if cid in self.pins:
            return httpx.Response(200, json=self.pins[cid])
        return httpx.Response(404)

    def gateway_hosts(self) -> List[str]:
        return [r.url.host for r in self.requests if r.url.host != "api.pinata.test"]


@pytest.fixture
def settings() -> Settings:
    return load_settings(
        kv_url="memory://",
        database_url="sqlite://",
        worker_concurrency=2,
        worker_poll_interval=0.02,
        progress_interval=0.01,
        stats_interval=0,
        shutdown_timeout=5.0,
        persist_attempts=3,
        persist_backoff_seconds=0.5,
        prover_timeout=5.0,
        pin_write_url=PIN_API,
        pin_read_gateways=list(GATEWAYS),
        pin_attempts=3,
        pin_backoff_seconds=1.0,
    )


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def pinata() -> FakePinata:
    return FakePinata()


@pytest_asyncio.fixture
async def pinning(pinata, sleep, database):
    client = httpx.AsyncClient(transport=httpx.MockTransport(pinata))
    service = PinningService(
        PIN_API,
        list(GATEWAYS),
        attempts=3,
        backoff_seconds=1.0,
        client=client,
        database=database,
        sleep=sleep,
        clock=lambda: 1_700_000_000.0,
    )
    yield service
    await service.close()


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def channel() -> NotificationChannel:
    return NotificationChannel()


@pytest.fixture
def inputs() -> StaticInputSource:
    return StaticInputSource(
        {
            "subject-1": subject_data(),
            "subject-2": subject_data(risk_score=0.4),
            "subject-3": subject_data(activity_score=2.5),
        }
    )


@pytest.fixture
def prover() -> MockProver:
    return MockProver()


@pytest_asyncio.fixture
async def services(settings, pinning, database, channel, inputs, prover) -> Services:
    built = build_services(
        settings,
        kv=MemoryKeyValueStore(),
        prover=prover,
        inputs=inputs,
        pinning=pinning,
        database=database,
        channel=channel,
    )
    yield built
    built.channel.close()
    await built.kv.close()


async def wait_for_status(store, job_id: str, *statuses, timeout: float = 5.0):
    """Poll the job store until the job reaches one of ``statuses``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await store.get(job_id)
        if job.status in statuses:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {job.status.value}")
        await asyncio.sleep(0.01)
