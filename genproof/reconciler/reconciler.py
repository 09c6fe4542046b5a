"""
Event Reconciler: applies ledger events to the transactional store.

Delivery is at-least-once, so every handler is idempotent:
- VerificationComplete: audit row keyed by tx_hash; counter and
  chain-verified flag only change when the audit row is new
- AccessGranted: last-write-wins upsert per (subject, grantee) by ordering
  key; pending access requests for the pair are approved
- AccessRevoked: revokes the active grant, no-op when there is none
- ArtifactSubmitted: submission row keyed by tx_hash; trait aggregate only
  incremented when the row is new

Each event is applied in one transaction together with its shard cursor.
When an event exhausts its redeliveries on a transaction failure, its shard
stalls: later events routed there are deferred, so the shard cursor never
passes the failed event and the next backfill replays from it. Malformed
events are dead-lettered and skipped.
Events are routed to shards by entity so events for one entity are applied
in arrival order while unrelated entities proceed concurrently. A
notification is published only after the transaction commits.
"""
from __future__ import annotations

import asyncio
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..channel import (
    ACCESS_GRANTED,
    ACCESS_REVOKED,
    ARTIFACT_SUBMITTED,
    VERIFICATION_COMPLETE,
    NotificationChannel,
)
from ..db.base import Database
from ..db.repositories import ArtifactRepository, LedgerStateRepository
from ..errors import GenproofError, ReconciliationError, ValidationError
from ..retry import Sleep, retry_async
from .ledger import LedgerClient
from .models import LedgerEvent, LedgerEventType

logger = structlog.get_logger()

VERIFICATION_COUNTER = "verification_count"

CHANNEL_EVENTS = {
    LedgerEventType.VERIFICATION_COMPLETE: VERIFICATION_COMPLETE,
    LedgerEventType.ACCESS_GRANTED: ACCESS_GRANTED,
    LedgerEventType.ACCESS_REVOKED: ACCESS_REVOKED,
    LedgerEventType.ARTIFACT_SUBMITTED: ARTIFACT_SUBMITTED,
}


@dataclass
class DeadLetter:
    """An event that could not be applied after every redelivery."""

    event: LedgerEvent
    error: str
    code: str
    attempts: int
    retryable: bool = True
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _parse_expiry(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    raise ValidationError(f"invalid expiry: {value!r}")


def _scopes(event: LedgerEvent) -> List[str]:
    scopes = event.payload.get("scopes", event.payload.get("traits"))
    if scopes is None:
        return [event.trait_type] if event.trait_type else []
    if isinstance(scopes, str):
        return [scopes]
    return [str(s) for s in scopes]


def _artifact_ref(event: LedgerEvent) -> Optional[str]:
    return event.payload.get("artifact_ref") or event.payload.get("proofHash")


def _require_counterparty(event: LedgerEvent) -> str:
    if not event.counterparty_ref:
        raise ValidationError(f"{event.type.value} requires counterparty_ref")
    return event.counterparty_ref


class EventReconciler:
    """Consumes a ledger feed and keeps local state in step with it.

    Args:
        database: Transactional store
        ledger: Ledger client for live and historical events
        channel: Notification channel for post-commit events
        name: Consumer name; cursors are stored as ``<name>:<shard>``
        shards: Number of per-entity ordered queues
        redeliveries: Attempts per event before it is dead-lettered
        backoff_seconds: Base delay between redeliveries
        store_timeout: Per-transaction timeout in seconds
    """

    def __init__(
        self,
        database: Database,
        ledger: LedgerClient,
        channel: Optional[NotificationChannel] = None,
        name: str = "default",
        shards: int = 4,
        redeliveries: int = 5,
        backoff_seconds: float = 0.5,
        store_timeout: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.database = database
        self.ledger = ledger
        self.channel = channel
        self.name = name
        self.shards = shards
        self.redeliveries = redeliveries
        self.backoff_seconds = backoff_seconds
        self.store_timeout = store_timeout
        self.sleep = sleep

        self.logger = logger.bind(consumer=name)
        self.dead_letters: List[DeadLetter] = []
        self.applied = 0
        self.skipped = 0
        self.deferred = 0
        self._stalled: Dict[int, LedgerEvent] = {}
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []
        self._handlers: Dict[LedgerEventType, Callable] = {
            LedgerEventType.VERIFICATION_COMPLETE: self._on_verification_complete,
            LedgerEventType.ACCESS_GRANTED: self._on_access_granted,
            LedgerEventType.ACCESS_REVOKED: self._on_access_revoked,
            LedgerEventType.ARTIFACT_SUBMITTED: self._on_artifact_submitted,
        }

    @classmethod
    def from_settings(cls, settings, database, ledger, channel=None, **kwargs):
        return cls(
            database,
            ledger,
            channel,
            name=settings.reconciler_name,
            shards=settings.reconciler_shards,
            redeliveries=settings.reconciler_redeliveries,
            backoff_seconds=settings.reconciler_backoff_seconds,
            store_timeout=settings.store_timeout,
            **kwargs,
        )

    # Single event

    async def apply(self, event: LedgerEvent) -> bool:
        """Apply one event in one transaction, then publish.

        Returns:
            True if the event changed state, False for a replay or no-op

        Raises:
            ValidationError: If the event is malformed (never redelivered)
            ReconciliationError: If the transaction failed and rolled back
        """
        log = self.logger.bind(tx_hash=event.tx_hash, event_type=event.type.value)
        try:
            notification = await asyncio.wait_for(
                asyncio.to_thread(self._apply_in_transaction, event),
                timeout=self.store_timeout,
            )
        except ValidationError:
            raise
        except asyncio.TimeoutError as e:
            raise ReconciliationError("store transaction timed out") from e
        except SQLAlchemyError as e:
            raise ReconciliationError(f"store transaction failed: {e}") from e
        except GenproofError as e:
            raise ReconciliationError(e.message) from e

        if notification is None:
            self.skipped += 1
            log.debug("ledger_event_noop", block_number=event.block_number)
            return False

        self.applied += 1
        log.info("ledger_event_applied", block_number=event.block_number)
        if self.channel is not None:
            self.channel.publish(event.subject_ref, CHANNEL_EVENTS[event.type], notification)
        return True

    def _apply_in_transaction(self, event: LedgerEvent) -> Optional[Dict[str, Any]]:
        with self.database.transaction() as session:
            notification = self._handlers[event.type](session, event)
            LedgerStateRepository(session).advance_cursor(
                self.cursor_name(self.shard_for(event)), event.key
            )
            return notification

    # Handlers run inside the transaction and return the notification payload,
    # or None when nothing changed.

    def _on_verification_complete(self, session, event: LedgerEvent):
        state = LedgerStateRepository(session)
        artifact_ref = _artifact_ref(event)
        created = state.record_verification(
            tx_hash=event.tx_hash,
            block_number=event.block_number,
            subject_ref=event.subject_ref,
            verifier_ref=event.counterparty_ref,
            artifact_ref=artifact_ref,
            trait_type=event.trait_type,
            event_timestamp=event.timestamp,
        )
        if not created:
            return None

        count = state.increment_subject_counter(event.subject_ref, VERIFICATION_COUNTER)
        verified = False
        if artifact_ref:
            verified = ArtifactRepository(session).mark_chain_verified(
                artifact_ref, event.tx_hash
            )
        return {
            "subject_ref": event.subject_ref,
            "artifact_ref": artifact_ref,
            "trait_type": event.trait_type,
            "verification_count": count,
            "artifact_found": verified,
            "tx_hash": event.tx_hash,
        }

    def _on_access_granted(self, session, event: LedgerEvent):
        grantee = _require_counterparty(event)
        state = LedgerStateRepository(session)
        scopes = _scopes(event)
        expires_at = _parse_expiry(
            event.payload.get("expires_at", event.payload.get("expiry"))
        )
        if not state.upsert_grant(event.subject_ref, grantee, scopes, expires_at, event.key):
            return None
        approved = state.approve_pending_requests(event.subject_ref, grantee, event.tx_hash)
        return {
            "subject_ref": event.subject_ref,
            "grantee_ref": grantee,
            "scopes": sorted(set(scopes)),
            "expires_at": expires_at.isoformat() if expires_at else None,
            "requests_approved": approved,
            "tx_hash": event.tx_hash,
        }

    def _on_access_revoked(self, session, event: LedgerEvent):
        grantee = _require_counterparty(event)
        if not LedgerStateRepository(session).revoke_grant(
            event.subject_ref, grantee, event.key
        ):
            return None
        return {
            "subject_ref": event.subject_ref,
            "grantee_ref": grantee,
            "tx_hash": event.tx_hash,
        }

    def _on_artifact_submitted(self, session, event: LedgerEvent):
        state = LedgerStateRepository(session)
        trait = event.trait_type or event.payload.get("traitType") or "UNKNOWN"
        created = state.record_submission(
            tx_hash=event.tx_hash,
            block_number=event.block_number,
            subject_ref=event.subject_ref,
            artifact_ref=_artifact_ref(event),
            trait_type=trait,
        )
        if not created:
            return None
        total = state.increment_trait_aggregate(trait)
        return {
            "subject_ref": event.subject_ref,
            "artifact_ref": _artifact_ref(event),
            "trait_type": trait,
            "trait_total": total,
            "tx_hash": event.tx_hash,
        }

    # Redelivery

    async def deliver(self, event: LedgerEvent) -> bool:
        """Apply with bounded redelivery. Never raises for event failures.

        Returns:
            True if the event was consumed (applied or a no-op), False if it
            was dead-lettered
        """
        return await self._deliver(event) is None

    async def _deliver(self, event: LedgerEvent) -> Optional[DeadLetter]:
        try:
            await retry_async(
                lambda: self.apply(event),
                attempts=self.redeliveries,
                base_delay=self.backoff_seconds,
                retry_on=(ReconciliationError,),
                sleep=self.sleep,
                label="ledger_event",
            )
            return None
        except (ValidationError, ReconciliationError) as e:
            return self._dead_letter(event, e)
        except Exception as e:
            self.logger.exception("ledger_event_crashed", tx_hash=event.tx_hash)
            return self._dead_letter(event, e)

    def _dead_letter(self, event: LedgerEvent, error: Exception) -> DeadLetter:
        code = getattr(error, "code", "INTERNAL_ERROR")
        message = getattr(error, "message", str(error))
        malformed = isinstance(error, ValidationError)
        letter = DeadLetter(
            event,
            message,
            code,
            attempts=1 if malformed else self.redeliveries,
            retryable=not malformed,
        )
        self.dead_letters.append(letter)
        self.logger.error(
            "ledger_event_dead_lettered",
            tx_hash=event.tx_hash,
            event_type=event.type.value,
            code=code,
            error=message,
            ledger_event=event.to_dict(),
        )
        return letter

    # Sharded consumption

    def shard_for(self, event: LedgerEvent) -> int:
        return zlib.crc32(event.entity_key.encode("utf-8")) % self.shards

    def cursor_name(self, shard: int) -> str:
        return f"{self.name}:{shard}"

    def start(self) -> None:
        if self._workers:
            return
        self._queues = [asyncio.Queue() for _ in range(self.shards)]
        self._workers = [
            asyncio.create_task(self._shard_worker(i), name=f"{self.name}-shard{i}")
            for i in range(self.shards)
        ]

    async def _shard_worker(self, shard: int) -> None:
        queue = self._queues[shard]
        while True:
            event = await queue.get()
            try:
                await self._consume(shard, event)
            finally:
                queue.task_done()

    async def _consume(self, shard: int, event: LedgerEvent) -> None:
        stalled = self._stalled.get(shard)
        if stalled is not None:
            self.deferred += 1
            self.logger.warning(
                "ledger_event_deferred",
                tx_hash=event.tx_hash,
                shard=shard,
                stalled_at=stalled.tx_hash,
            )
            return

        letter = await self._deliver(event)
        if letter is not None and letter.retryable:
            self._stalled[shard] = event
            self.logger.error(
                "ledger_shard_stalled",
                shard=shard,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )

    def stalled_shards(self) -> Dict[int, LedgerEvent]:
        """Shards halted on an unconsumed event, with that event."""
        return dict(self._stalled)

    async def submit(self, event: LedgerEvent) -> None:
        """Route an event to its entity's shard."""
        if not self._workers:
            self.start()
        await self._queues[self.shard_for(event)].put(event)

    async def drain(self) -> None:
        """Wait until every routed event has been consumed."""
        for queue in self._queues:
            await queue.join()

    async def stop(self) -> None:
        await self.drain()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queues = []

    # Cursor and backfill

    async def resume_block(self) -> int:
        """First block to backfill from: the lowest shard cursor, inclusive."""

        def _load() -> int:
            with self.database.transaction() as session:
                state = LedgerStateRepository(session)
                blocks = []
                for shard in range(self.shards):
                    cursor = state.get_cursor(self.cursor_name(shard))
                    blocks.append(cursor[0] if cursor else 0)
                return min(blocks)

        return await asyncio.to_thread(_load)

    async def checkpoint(self, block_number: int, tx_hash: str) -> None:
        """Advance every shard cursor to a key known to be fully applied."""

        def _save() -> None:
            with self.database.transaction() as session:
                state = LedgerStateRepository(session)
                for shard in range(self.shards):
                    state.advance_cursor(self.cursor_name(shard), (block_number, tx_hash))

        await asyncio.to_thread(_save)

    async def backfill(self, to_block: Optional[int] = None) -> int:
        """Replay historical events from the persisted cursor.

        Returns:
            Number of events routed
        """
        from_block = await self.resume_block()
        events: List[LedgerEvent] = []
        for event_type in LedgerEventType:
            events.extend(await self.ledger.query_range(event_type, from_block, to_block))
        events.sort(key=lambda e: e.key)

        self.logger.info("ledger_backfill_started", from_block=from_block, events=len(events))
        dead_before = len(self.dead_letters)
        for event in events:
            await self.submit(event)
        await self.drain()

        if events and len(self.dead_letters) == dead_before:
            last = events[-1]
            await self.checkpoint(last.block_number, last.tx_hash)
        self.logger.info("ledger_backfill_completed", events=len(events))
        return len(events)

    async def run(self) -> None:
        """Backfill from the cursor, then follow the live feed until it ends."""
        stream = self.ledger.subscribe()
        self.start()
        try:
            await self.backfill()
            async for event in stream:
                await self.submit(event)
        finally:
            await self.stop()

    def stats(self) -> Dict[str, Any]:
        return {
            "consumer": self.name,
            "shards": self.shards,
            "applied": self.applied,
            "skipped": self.skipped,
            "dead_letters": len(self.dead_letters),
            "deferred": self.deferred,
            "stalled_shards": sorted(self._stalled),
            "pending": sum(q.qsize() for q in self._queues),
        }
