"""Tests for the pinning service."""

import httpx
import pytest

from genproof.errors import NotFoundError
from genproof.jobs.inputs import PinnedInputSource
from genproof.pinning.models import PAYLOAD, SUBJECT_DATA, MaintenanceOutcome
from genproof.pinning.service import PinningService, is_local, local_content_id

from conftest import GATEWAYS, PIN_API, FakePinata, subject_data


class TestPin:
    """Tests for verified writes and degraded mode."""

    @pytest.mark.asyncio
    async def test_durable_pin(self, pinning, pinata, sleep):
        result = await pinning.pin({"a": 1}, owner_id="subject-1")

        assert result.durable is True
        assert result.content_id == "bafy0001"
        assert result.record.verified_at is not None
        assert pinata.pins["bafy0001"] == {"a": 1}
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_writes_with_backoff(self, pinning, pinata, sleep):
        pinata.fail_writes = 2

        result = await pinning.pin({"a": 1})

        assert result.durable is True
        assert not is_local(result.content_id)
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_falls_back_to_local_id(self, pinning, pinata, sleep):
        pinata.fail_writes = 3

        result = await pinning.pin({"a": 1}, owner_id="subject-1")

        assert result.durable is False
        assert result.content_id == local_content_id({"a": 1})
        assert result.content_id.startswith("local:")
        assert sleep.delays == [1.0, 2.0]
        assert await pinning.get(result.content_id) == {"a": 1}
        assert pinata.gateway_hosts() == []

    @pytest.mark.asyncio
    async def test_unverified_write_is_not_durable(self, sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"IpfsHash": "bafyghost"})
            return httpx.Response(200, json={"count": 0})

        service = PinningService(
            PIN_API,
            GATEWAYS,
            attempts=2,
            backoff_seconds=1.0,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=sleep,
        )
        result = await service.pin({"a": 1})
        await service.close()

        assert result.durable is False
        assert is_local(result.content_id)

    @pytest.mark.asyncio
    async def test_subject_data_commitment(self, pinning):
        result = await pinning.pin_subject_data("subject-1", subject_data())

        commitment = result.record.commitment_hash
        assert commitment.startswith("0x") and len(commitment) == 66
        by_commitment = await pinning.find_by_commitment(commitment, SUBJECT_DATA)
        latest = await pinning.latest_for_owner("subject-1", SUBJECT_DATA)
        assert by_commitment.content_id == latest.content_id == result.content_id
        assert latest.commitment_hash == commitment
        assert latest.kind == SUBJECT_DATA

    @pytest.mark.asyncio
    async def test_html_pin_list_degrades(self, sleep):
        """A pin list answered with an HTML page counts as a failed verify."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"IpfsHash": "bafyhtml"})
            return httpx.Response(200, text="<html>maintenance</html>")

        service = PinningService(
            PIN_API,
            GATEWAYS,
            attempts=2,
            backoff_seconds=1.0,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=sleep,
        )
        result = await service.pin({"a": 1})
        await service.close()

        assert result.durable is False
        assert result.content_id == local_content_id({"a": 1})

    @pytest.mark.asyncio
    async def test_record_is_shared_through_the_store(self, pinning, pinata, database):
        result = await pinning.pin({"a": 1}, owner_id="subject-1")

        other = PinningService(
            PIN_API,
            GATEWAYS,
            client=httpx.AsyncClient(transport=httpx.MockTransport(pinata)),
            database=database,
        )
        record = await other.find_by_commitment(result.record.commitment_hash)
        await other.close()

        assert record.content_id == result.content_id
        assert record.kind == PAYLOAD
        assert record.durable is True


class TestGet:
    """Tests for multi-gateway reads."""

    @pytest.mark.asyncio
    async def test_gateways_tried_in_order(self, pinning, pinata):
        cid = (await pinning.pin({"a": 1})).content_id
        pinata.down.add(GATEWAYS[0])

        assert await pinning.get(cid) == {"a": 1}
        assert pinata.gateway_hosts() == ["gw1.test", "gw2.test"]

    @pytest.mark.asyncio
    async def test_first_gateway_wins(self, pinning, pinata):
        cid = (await pinning.pin({"a": 1})).content_id

        assert await pinning.get(cid) == {"a": 1}
        assert pinata.gateway_hosts() == ["gw1.test"]

    @pytest.mark.asyncio
    async def test_local_copy_when_gateways_down(self, pinning, pinata):
        cid = (await pinning.pin({"a": 1})).content_id
        pinata.down.update(GATEWAYS)

        assert await pinning.get(cid) == {"a": 1}

    @pytest.mark.asyncio
    async def test_unknown_content(self, pinning):
        with pytest.raises(NotFoundError):
            await pinning.get("bafyunknown")

    @pytest.mark.asyncio
    async def test_local_store_is_bounded(self, pinata, sleep):
        pinata.fail_writes = 9
        service = PinningService(
            PIN_API,
            GATEWAYS,
            attempts=3,
            local_capacity=2,
            client=httpx.AsyncClient(transport=httpx.MockTransport(pinata)),
            sleep=sleep,
        )
        first = (await service.pin({"n": 1})).content_id
        second = (await service.pin({"n": 2})).content_id
        assert await service.get(first) == {"n": 1}
        third = (await service.pin({"n": 3})).content_id

        assert await service.get(first) == {"n": 1}
        assert await service.get(third) == {"n": 3}
        with pytest.raises(NotFoundError):
            await service.get(second)
        await service.close()


class TestMaintenance:
    """Tests for verify/unpin/stats results."""

    @pytest.mark.asyncio
    async def test_verify_remote_pin(self, pinning):
        cid = (await pinning.pin({"a": 1})).content_id

        result = await pinning.verify(cid)

        assert result.ok
        assert result.value is True

    @pytest.mark.asyncio
    async def test_verify_local_id_is_degraded(self, pinning, pinata):
        pinata.fail_writes = 3
        cid = (await pinning.pin({"a": 1})).content_id

        result = await pinning.verify(cid)

        assert result.outcome == MaintenanceOutcome.DEGRADED
        assert result.value is True

    @pytest.mark.asyncio
    async def test_unpin(self, pinning, pinata):
        cid = (await pinning.pin({"a": 1})).content_id

        assert (await pinning.unpin(cid)).ok
        assert cid not in pinata.pins

        missing = await pinning.unpin(cid)
        assert missing.outcome == MaintenanceOutcome.FAILED
        assert missing.value is False

    @pytest.mark.asyncio
    async def test_stats(self, pinning):
        await pinning.pin({"a": 1})
        await pinning.pin({"b": 2})

        result = await pinning.stats()

        assert result.ok
        assert result.value == {"count": 2, "size": 0, "local": False}

    @pytest.mark.asyncio
    async def test_stats_degraded_when_unreachable(self, sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        service = PinningService(
            PIN_API,
            GATEWAYS,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=sleep,
        )
        result = await service.stats()
        await service.close()

        assert result.outcome == MaintenanceOutcome.DEGRADED
        assert result.value["local"] is True
        assert result.to_dict()["outcome"] == "degraded"

    @pytest.mark.asyncio
    async def test_list_shaped_pin_list(self, pinning, pinata):
        """A JSON array from the pin list fails verify and degrades stats."""
        cid = (await pinning.pin({"a": 1})).content_id
        real = pinning._client
        pinning._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[]))
        )

        verified = await pinning.verify(cid)
        stats = await pinning.stats()
        await pinning._client.aclose()
        pinning._client = real

        assert verified.outcome == MaintenanceOutcome.FAILED
        assert verified.value is False
        assert stats.outcome == MaintenanceOutcome.DEGRADED
        assert stats.value == {"count": 1, "size": 0, "local": True}

    @pytest.mark.asyncio
    async def test_stats_rejects_non_object_rows(self, sleep):
        service = PinningService(
            PIN_API,
            GATEWAYS,
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(
                    lambda request: httpx.Response(200, json={"count": 1, "rows": ["x"]})
                )
            ),
            sleep=sleep,
        )
        result = await service.stats()
        await service.close()

        assert result.outcome == MaintenanceOutcome.DEGRADED


class TestPinnedInputSource:
    """Tests for retrieving subject data through pinned commitments."""

    @pytest.mark.asyncio
    async def test_fetch_by_commitment(self, pinning):
        data = subject_data()
        pinned = await pinning.pin_subject_data("subject-1", data)
        source = PinnedInputSource(pinning)

        fetched = await source.fetch("subject-1", pinned.record.commitment_hash)

        assert fetched.data == data
        assert fetched.commitment_hash == pinned.record.commitment_hash

    @pytest.mark.asyncio
    async def test_fetch_latest_for_owner(self, pinning):
        await pinning.pin_subject_data("subject-1", subject_data())
        source = PinnedInputSource(pinning)

        fetched = await source.fetch("subject-1")

        assert fetched.data == subject_data()

    @pytest.mark.asyncio
    async def test_commitment_of_another_subject(self, pinning):
        pinned = await pinning.pin_subject_data("subject-1", subject_data())
        source = PinnedInputSource(pinning)

        with pytest.raises(NotFoundError):
            await source.fetch("subject-2", pinned.record.commitment_hash)
