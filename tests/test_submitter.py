"""Tests for the job store, result cache and submitter."""

import pytest

from genproof.channel import JOB_COMPLETED
from genproof.errors import InvalidTransitionError, NotFoundError, ValidationError
from genproof.jobs.cache import ResultCache
from genproof.jobs.models import Artifact, Fingerprint, Job, JobStatus
from genproof.jobs.store import JobStore
from genproof.jobs.submitter import Submitter
from genproof.kv import MemoryKeyValueStore

from conftest import FakeClock


def make_artifact(subject_id="subject-1", trait_type="BRCA1", content_hash="0xabc"):
    return Artifact.build(
        subject_id=subject_id,
        trait_type=trait_type,
        content_hash=content_hash,
        public_inputs={"trait_type": trait_type},
        verification_key="vk_brca1_mock",
        commitment_hash="0xcommit",
    )


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def store(kv):
    return JobStore(kv, ttl_seconds=3600)


@pytest.fixture
def cache(kv):
    return ResultCache(kv, ttl_seconds=3600)


@pytest.fixture
def submitter(store, cache, channel):
    return Submitter(store, cache, channel=channel, expected_durations={"BRCA1": 10.0})


class TestJobStore:
    """Tests for TTL-bounded job records."""

    @pytest.mark.asyncio
    async def test_unknown_job_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.get("nope")

    @pytest.mark.asyncio
    async def test_records_expire_after_ttl(self):
        clock = FakeClock()
        store = JobStore(MemoryKeyValueStore(clock=clock), ttl_seconds=60)
        job = Job(subject_id="s", trait_type="BRCA1")
        await store.save_new(job)

        clock.now += 61
        with pytest.raises(NotFoundError):
            await store.get(job.id)

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, store):
        job = Job(subject_id="s", trait_type="BRCA1")
        await store.save_new(job)

        first = await store.claim(job.id, "w1")
        second = await store.claim(job.id, "w2")

        assert first.status == JobStatus.PROCESSING
        assert first.worker_id == "w1"
        assert second is None

    @pytest.mark.asyncio
    async def test_progress_cannot_go_backwards(self, store):
        job = Job(subject_id="s", trait_type="BRCA1")
        await store.save_new(job)
        await store.claim(job.id, "w1")

        await store.set_progress(job.id, 30, "generating")
        with pytest.raises(InvalidTransitionError):
            await store.set_progress(job.id, 20)
        assert (await store.get(job.id)).progress == 30

    @pytest.mark.asyncio
    async def test_complete_is_terminal(self, store):
        job = Job(subject_id="s", trait_type="BRCA1")
        await store.save_new(job)
        await store.claim(job.id, "w1")

        done = await store.complete(job.id, make_artifact())
        assert done.status == JobStatus.COMPLETE
        assert done.progress == 100
        assert done.result.content_hash == "0xabc"

        with pytest.raises(InvalidTransitionError):
            await store.fail(job.id, "late failure", "PROVER_FAILED")


class TestResultCache:
    """Tests for the fingerprint -> artifact cache."""

    @pytest.mark.asyncio
    async def test_first_write_wins(self, cache):
        fingerprint = Fingerprint("subject-1", "BRCA1")
        assert await cache.put(fingerprint, make_artifact(content_hash="0x1")) is True
        assert await cache.put(fingerprint, make_artifact(content_hash="0x2")) is False
        assert (await cache.get(fingerprint)).content_hash == "0x1"

    @pytest.mark.asyncio
    async def test_ttl_is_not_refreshed_by_reads(self):
        clock = FakeClock()
        cache = ResultCache(MemoryKeyValueStore(clock=clock), ttl_seconds=100)
        fingerprint = Fingerprint("subject-1", "BRCA1")
        await cache.put(fingerprint, make_artifact())

        clock.now += 60
        assert await cache.get(fingerprint) is not None
        clock.now += 40
        assert await cache.get(fingerprint) is None


class TestSubmitter:
    """Tests for validation, deduplication and cache short-circuit on submit."""

    @pytest.mark.asyncio
    async def test_queues_new_job(self, submitter, store):
        job = await submitter.submit("subject-1", "brca1")

        assert job.status == JobStatus.QUEUED
        assert job.trait_type == "BRCA1"
        assert await store.queued_ids() == [job.id]
        assert await submitter.queue_position(job.id) == 1
        assert submitter.estimated_time("BRCA1") == 10.0
        assert submitter.estimated_time("CYP2D6") == 20.0

    @pytest.mark.asyncio
    async def test_invalid_request_is_never_enqueued(self, submitter, store):
        with pytest.raises(ValidationError):
            await submitter.submit("subject-1", "BRCA1", threshold=2.0)
        with pytest.raises(ValidationError):
            await submitter.submit("subject-1", "HLA-B")
        assert await store.queued_ids() == []

    @pytest.mark.asyncio
    async def test_equivalent_requests_share_a_job(self, submitter, store):
        first = await submitter.submit("subject-1", "BRCA1", threshold=0.5)
        second = await submitter.submit("subject-1", "BRCA1", threshold=0.5)

        assert second.id == first.id
        assert await store.queued_ids() == [first.id]

    @pytest.mark.asyncio
    async def test_different_threshold_is_a_different_job(self, submitter):
        plain = await submitter.submit("subject-1", "BRCA1")
        strict = await submitter.submit("subject-1", "BRCA1", threshold=0.5)

        assert plain.id != strict.id
        assert await submitter.queue_position(strict.id) == 2

    @pytest.mark.asyncio
    async def test_finished_job_no_longer_deduplicates(self, submitter, store):
        first = await submitter.submit("subject-1", "BRCA1")
        await store.claim(first.id, "w1")
        await store.fail(first.id, "boom", "PROVER_FAILED")

        retry = await submitter.submit("subject-1", "BRCA1")
        assert retry.id != first.id
        assert retry.status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_cache_hit_returns_completed_job(self, submitter, store, cache, channel):
        sub = channel.subscribe("subject-1")
        await cache.put(Fingerprint("subject-1", "BRCA1"), make_artifact())

        job = await submitter.submit("subject-1", "BRCA1")

        assert job.status == JobStatus.COMPLETE
        assert job.progress == 100
        assert job.stage == "cached"
        assert job.result.content_hash == "0xabc"
        assert (await submitter.get_status(job.id)).status == JobStatus.COMPLETE
        assert await store.queued_ids() == []
        assert await submitter.queue_position(job.id) == 0
        assert [m.event for m in sub.drain()] == [JOB_COMPLETED]
