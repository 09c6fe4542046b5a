"""
Key/value backend for job records, the result cache and the job queue.

redis://  Redis (shared between processes)
memory:// in-process dictionary (single process, tests and local runs)

Design principle: treat storage as a URI, not a boolean.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple
from urllib.parse import urlparse

from redis import asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .errors import TransientIOError


class KeyValueStore(ABC):
    """Abstract async key/value store with TTL, CAS and FIFO queues."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for key, or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Write value, replacing any existing one. TTL is in seconds."""
        pass

    @abstractmethod
    async def set_if_absent(
        self, key: str, value: str, ttl: Optional[int] = None
    ) -> bool:
        """Write value only if key does not exist. Returns True if written."""
        pass

    @abstractmethod
    async def compare_and_set(self, key: str, expected: str, value: str) -> bool:
        """Replace value only if the current value equals expected.

        The remaining TTL of the key is kept.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key if present."""
        pass

    @abstractmethod
    async def enqueue(self, queue: str, item: str) -> None:
        """Append item to the tail of a FIFO queue."""
        pass

    @abstractmethod
    async def dequeue(self, queue: str, timeout: float) -> Optional[str]:
        """Pop the head of a queue, waiting up to timeout seconds."""
        pass

    @abstractmethod
    async def queue_items(self, queue: str) -> list:
        """Snapshot of queued items, head first."""
        pass

    async def close(self) -> None:
        """Release connections."""


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. TTLs follow a monotonic clock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._queues: Dict[str, Deque[str]] = {}
        self._lock = asyncio.Lock()
        self._queue_ready: Dict[str, asyncio.Event] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    async def set_if_absent(
        self, key: str, value: str, ttl: Optional[int] = None
    ) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    async def compare_and_set(self, key: str, expected: str, value: str) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            self._data[key] = (value, entry[1])
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def _ready(self, queue: str) -> asyncio.Event:
        if queue not in self._queue_ready:
            self._queue_ready[queue] = asyncio.Event()
        return self._queue_ready[queue]

    async def enqueue(self, queue: str, item: str) -> None:
        async with self._lock:
            self._queues.setdefault(queue, deque()).append(item)
            self._ready(queue).set()

    async def dequeue(self, queue: str, timeout: float) -> Optional[str]:
        deadline = self._clock() + timeout
        while True:
            async with self._lock:
                items = self._queues.get(queue)
                if items:
                    item = items.popleft()
                    if not items:
                        self._ready(queue).clear()
                    return item
                ready = self._ready(queue)
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            try:
                await asyncio.wait_for(ready.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None

    async def queue_items(self, queue: str) -> list:
        async with self._lock:
            return list(self._queues.get(queue, ()))


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store (redis.asyncio).

    Every call carries the client's socket timeout; Redis errors surface as
    TransientIOError so callers can retry them.
    """

    def __init__(self, client: aioredis.Redis, timeout: float = 5.0):
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> "RedisKeyValueStore":
        client = aioredis.Redis.from_url(
            url,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
            decode_responses=True,
            encoding="utf-8",
        )
        return cls(client, timeout=timeout)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise TransientIOError(f"redis get {key} failed: {e}") from e

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl)
        except RedisError as e:
            raise TransientIOError(f"redis set {key} failed: {e}") from e

    async def set_if_absent(
        self, key: str, value: str, ttl: Optional[int] = None
    ) -> bool:
        try:
            return bool(await self._client.set(key, value, ex=ttl, nx=True))
        except RedisError as e:
            raise TransientIOError(f"redis setnx {key} failed: {e}") from e

    async def compare_and_set(self, key: str, expected: str, value: str) -> bool:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, value, keepttl=True)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            raise TransientIOError(f"redis cas {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise TransientIOError(f"redis delete {key} failed: {e}") from e

    async def enqueue(self, queue: str, item: str) -> None:
        try:
            await self._client.rpush(queue, item)
        except RedisError as e:
            raise TransientIOError(f"redis rpush {queue} failed: {e}") from e

    async def dequeue(self, queue: str, timeout: float) -> Optional[str]:
        # BLPOP must return before the socket timeout fires
        wait = max(0.01, min(timeout, self._timeout * 0.8))
        try:
            popped = await self._client.blpop([queue], timeout=wait)
        except RedisError as e:
            raise TransientIOError(f"redis blpop {queue} failed: {e}") from e
        if popped is None:
            return None
        return popped[1]

    async def queue_items(self, queue: str) -> list:
        try:
            return list(await self._client.lrange(queue, 0, -1))
        except RedisError as e:
            raise TransientIOError(f"redis lrange {queue} failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


def create_kv_store(uri: str, timeout: float = 5.0) -> KeyValueStore:
    """Factory function to create the appropriate store from a URI.

    Raises:
        ValueError: If URI scheme is not supported
    """
    parsed = urlparse(uri)

    if parsed.scheme in ("redis", "rediss", "unix"):
        return RedisKeyValueStore.from_url(uri, timeout=timeout)
    elif parsed.scheme == "memory":
        return MemoryKeyValueStore()
    else:
        raise ValueError(
            f"Unsupported key/value scheme: {parsed.scheme}. "
            f"Supported: redis://, rediss://, memory://"
        )
