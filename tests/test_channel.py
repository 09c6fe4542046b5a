"""Tests for the notification channel."""

import asyncio

import pytest

from genproof.channel import JOB_FAILED, PROGRESS, NotificationChannel


class TestNotificationChannel:
    """Tests for publish/subscribe delivery."""

    @pytest.mark.asyncio
    async def test_topic_filtering(self):
        channel = NotificationChannel()
        mine = channel.subscribe("subject-1")
        everything = channel.subscribe()

        assert channel.publish("subject-1", PROGRESS, {"progress": 10}) == 2
        assert channel.publish("subject-2", PROGRESS, {"progress": 20}) == 1

        assert [m.payload["progress"] for m in mine.drain()] == [10]
        assert [m.topic for m in everything.drain()] == ["subject-1", "subject-2"]

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self):
        channel = NotificationChannel()
        sub = channel.subscribe(maxsize=2)

        for progress in (10, 20, 30):
            channel.publish("s", PROGRESS, {"progress": progress})

        assert [m.payload["progress"] for m in sub.drain()] == [20, 30]
        assert sub.dropped == 1

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        channel = NotificationChannel()
        sub = channel.subscribe()
        channel.publish("s", JOB_FAILED, {"code": "PROVER_FAILED"})

        async def collect():
            return [message.event async for message in sub]

        task = asyncio.create_task(collect())
        await asyncio.sleep(0)
        channel.close()

        assert await asyncio.wait_for(task, timeout=1.0) == [JOB_FAILED]
        assert channel.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_publish_after_close_is_dropped(self):
        channel = NotificationChannel()
        channel.close()
        assert channel.publish("s", PROGRESS, {}) == 0
        with pytest.raises(RuntimeError):
            channel.subscribe()

    @pytest.mark.asyncio
    async def test_get_timeout_returns_none(self):
        channel = NotificationChannel()
        sub = channel.subscribe()
        assert await sub.get(timeout=0.01) is None
        sub.close()
        assert channel.subscriber_count == 0
