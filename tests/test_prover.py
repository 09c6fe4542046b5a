"""Tests for prover implementations and progress reporting."""

import json

import httpx
import pytest

from genproof.channel import PROGRESS, NotificationChannel
from genproof.errors import ProverError
from genproof.jobs.models import Job
from genproof.jobs.store import JobStore
from genproof.jobs.validation import GeneticMarker
from genproof.kv import MemoryKeyValueStore
from genproof.prover import HttpProver, MockProver, create_prover
from genproof.prover.base import ProofOutput, ProofRequest
from genproof.worker.progress import ProgressReporter, ProgressTicker

from conftest import FakeClock


def make_request(trait_type="BRCA1"):
    return ProofRequest(
        job_id="job-1",
        subject_id="subject-1",
        trait_type=trait_type,
        marker=GeneticMarker(trait_type, False, {"risk_score": 0.2}),
    )


class TestMockProver:
    """Tests for the deterministic prover."""

    @pytest.mark.asyncio
    async def test_output_is_deterministic(self):
        prover = MockProver()
        first = await prover.generate(make_request())
        second = await prover.generate(make_request())

        assert first.content_hash == second.content_hash
        assert first.verification_key == "vk_brca1_mock"
        assert await prover.verify(first) is True
        assert prover.calls == 2

    @pytest.mark.asyncio
    async def test_reports_progress(self):
        seen = []

        async def on_progress(progress, stage):
            seen.append(progress)

        await MockProver(delay=0.01, steps=3).generate(make_request(), on_progress)

        assert len(seen) == 3
        assert seen == sorted(seen)
        assert all(30 <= p <= 80 for p in seen)

    @pytest.mark.asyncio
    async def test_configured_failure(self):
        with pytest.raises(ProverError) as exc:
            await MockProver(fail_traits={"BRCA1"}).generate(make_request())
        assert exc.value.code == "PROVER_FAILED"


class TestHttpProver:
    """Tests for the remote prover client."""

    @pytest.mark.asyncio
    async def test_generate_and_verify(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/proofs":
                body = json.loads(request.content)
                assert body["marker"]["type"] == "BRCA1"
                return httpx.Response(
                    200,
                    json={"content_hash": "0xfeed", "verification_key": "vk_remote"},
                )
            return httpx.Response(200, json={"valid": True})

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://prover.test"
        )
        prover = HttpProver("http://prover.test", client=client)

        output = await prover.generate(make_request())

        assert output.content_hash == "0xfeed"
        assert await prover.verify(output) is True
        await prover.close()

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
            base_url="http://prover.test",
        )
        prover = HttpProver("http://prover.test", client=client)

        with pytest.raises(ProverError, match="500"):
            await prover.generate(make_request())
        assert await prover.verify(ProofOutput(content_hash="0x1")) is False
        await prover.close()

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://prover.test"
        )
        prover = HttpProver("http://prover.test", client=client)

        with pytest.raises(ProverError) as exc:
            await prover.generate(make_request())
        assert exc.value.code == "PROVER_TIMEOUT"
        await prover.close()

    @pytest.mark.asyncio
    async def test_malformed_verify_response(self):
        """A verify body that is not a JSON object is an invalid proof."""
        bodies = iter(
            [httpx.Response(200, text="<html>gateway</html>"), httpx.Response(200, json=[True])]
        )
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: next(bodies)),
            base_url="http://prover.test",
        )
        prover = HttpProver("http://prover.test", client=client)

        for _ in range(2):
            with pytest.raises(ProverError) as exc:
                await prover.verify(ProofOutput(content_hash="0x1"))
            assert exc.value.code == "PROOF_INVALID"
        await prover.close()


class TestCreateProver:
    def test_mock_backend(self, settings):
        assert isinstance(create_prover(settings), MockProver)

    def test_http_backend_requires_url(self, settings):
        settings.prover_backend = "http"
        with pytest.raises(ValueError, match="prover_url"):
            create_prover(settings)

    def test_unknown_backend(self, settings):
        settings.prover_backend = "gpu"
        with pytest.raises(ValueError, match="Unsupported prover backend"):
            create_prover(settings)


class TestProgress:
    """Tests for throttled progress reporting and interpolation."""

    @pytest.fixture
    def store(self):
        return JobStore(MemoryKeyValueStore())

    async def processing_job(self, store):
        job = Job(subject_id="subject-1", trait_type="BRCA1")
        await store.save_new(job)
        return await store.claim(job.id, "w1")

    @pytest.mark.asyncio
    async def test_publishes_are_throttled(self, store):
        channel = NotificationChannel()
        sub = channel.subscribe()
        clock = FakeClock()
        job = await self.processing_job(store)
        reporter = ProgressReporter(store, channel, job, interval=1.0, clock=clock)

        await reporter.advance(10)
        await reporter.advance(20)
        clock.now += 1.0
        await reporter.advance(30)

        assert [m.payload["progress"] for m in sub.drain()] == [10, 30]
        assert (await store.get(job.id)).progress == 30

    @pytest.mark.asyncio
    async def test_lower_values_are_ignored(self, store):
        job = await self.processing_job(store)
        reporter = ProgressReporter(store, None, job)

        assert await reporter.advance(40) is True
        assert await reporter.advance(35) is False
        assert (await store.get(job.id)).progress == 40

    @pytest.mark.asyncio
    async def test_flush_pushes_suppressed_value(self, store):
        channel = NotificationChannel()
        sub = channel.subscribe()
        clock = FakeClock()
        job = await self.processing_job(store)
        reporter = ProgressReporter(store, channel, job, interval=1.0, clock=clock)

        await reporter.advance(10)
        await reporter.advance(20)
        clock.now += 1.0
        reporter.flush()

        messages = sub.drain()
        assert [m.payload["progress"] for m in messages] == [10, 20]
        assert all(m.event == PROGRESS for m in messages)

    @pytest.mark.asyncio
    async def test_ticker_interpolates_within_bounds(self, store):
        job = await self.processing_job(store)
        reporter = ProgressReporter(store, None, job)
        ticker = ProgressTicker(reporter, expected_duration=10.0)

        assert ticker.value_at(0) == 30
        assert ticker.value_at(5) == 55
        assert ticker.value_at(100) == 80
        assert ticker.bounded(95) == 80
        assert ticker.bounded(5) == 30

        await ticker.report(95)
        assert (await store.get(job.id)).progress == 80

    @pytest.mark.asyncio
    async def test_ticker_defers_to_prover_progress(self, store):
        """Once the prover reports, elapsed time no longer raises progress."""
        job = await self.processing_job(store)
        reporter = ProgressReporter(store, None, job)
        clock = FakeClock()
        ticker = ProgressTicker(
            reporter, expected_duration=100.0, interval=60.0, clock=clock
        )

        async with ticker:
            await MockProver(steps=1).generate(make_request(), on_progress=ticker.report)
            assert (await store.get(job.id)).progress == 55

            clock.now += 90.0
            await ticker.tick()

        assert (await store.get(job.id)).progress == 55

    @pytest.mark.asyncio
    async def test_ticker_interpolates_until_first_report(self, store):
        job = await self.processing_job(store)
        reporter = ProgressReporter(store, None, job)
        clock = FakeClock()
        ticker = ProgressTicker(
            reporter, expected_duration=100.0, interval=60.0, clock=clock
        )

        async with ticker:
            clock.now += 20.0
            await ticker.tick()
            assert (await store.get(job.id)).progress == 40

            await ticker.report(45)
            clock.now += 70.0
            await ticker.tick()

        assert (await store.get(job.id)).progress == 45
