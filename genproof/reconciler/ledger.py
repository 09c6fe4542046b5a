"""
Ledger client interface and an in-process implementation.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

from .models import LedgerEvent, LedgerEventType

_CLOSED = object()


class LedgerClient(ABC):
    """Source of ordered ledger events."""

    @abstractmethod
    def subscribe(
        self, event_type: Optional[LedgerEventType] = None
    ) -> AsyncIterator[LedgerEvent]:
        """Live stream of events (all types when ``event_type`` is None).

        Registration happens on call, so events emitted before iteration
        starts are not lost.
        """
        pass

    @abstractmethod
    async def query_range(
        self,
        event_type: LedgerEventType,
        from_block: int,
        to_block: Optional[int] = None,
    ) -> List[LedgerEvent]:
        """Historical events in [from_block, to_block], ordered by key."""
        pass

    async def close(self) -> None:
        pass


class MemoryLedgerClient(LedgerClient):
    """Ledger held in memory. ``emit`` appends and fans out to subscribers."""

    def __init__(self, history: Optional[List[LedgerEvent]] = None):
        self.history: List[LedgerEvent] = sorted(history or [], key=lambda e: e.key)
        self._subscribers: List[asyncio.Queue] = []
        self.closed = False

    def emit(self, event: LedgerEvent) -> None:
        """Record ``event`` and deliver it to live subscribers."""
        self.history.append(event)
        self.history.sort(key=lambda e: e.key)
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def subscribe(
        self, event_type: Optional[LedgerEventType] = None
    ) -> AsyncIterator[LedgerEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return self._stream(queue, event_type)

    async def _stream(
        self, queue: asyncio.Queue, event_type: Optional[LedgerEventType]
    ) -> AsyncIterator[LedgerEvent]:
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                if event_type is None or item.type == event_type:
                    yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    async def query_range(
        self,
        event_type: LedgerEventType,
        from_block: int,
        to_block: Optional[int] = None,
    ) -> List[LedgerEvent]:
        return [
            event
            for event in self.history
            if event.type == event_type
            and event.block_number >= from_block
            and (to_block is None or event.block_number <= to_block)
        ]

    async def close(self) -> None:
        self.closed = True
        for queue in list(self._subscribers):
            queue.put_nowait(_CLOSED)
