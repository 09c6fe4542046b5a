"""
Pinning Service: content-addressed storage with verified writes and
multi-gateway reads.

Writes go to a single pinning API (Pinata-compatible):
    POST   /pinning/pinJSONToIPFS          -> {"IpfsHash": cid}
    GET    /data/pinList?hashContains=cid  -> {"count": n, "rows": [...]}
    DELETE /pinning/unpin/<cid>

Reads try each gateway (``<gateway>/<cid>``) in declared order and fall back
to the local ephemeral store.

When every write/verify attempt fails, the payload is kept in the local
store under a ``local:<sha256>`` identifier and reported with
``durable=False``. The local store is bounded; the least recently used
payloads are evicted first.

Pin records are kept in the transactional store so that every process
resolves the same owners and commitments.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..db.base import Database
from ..errors import NotFoundError, TransientIOError
from ..jobs.models import utc_now
from ..retry import Sleep, backoff_delay
from .models import PAYLOAD, SUBJECT_DATA, MaintenanceResult, PinRecord, PinResult

if TYPE_CHECKING:
    from ..db.models import PinRecordModel
    from ..db.repositories import PinRecordRepository

logger = structlog.get_logger()

LOCAL_PREFIX = "local:"


def _canonical(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def local_content_id(payload: Any) -> str:
    return LOCAL_PREFIX + hashlib.sha256(_canonical(payload).encode("utf-8")).hexdigest()


def is_local(content_id: str) -> bool:
    return content_id.startswith(LOCAL_PREFIX)


def _to_record(row: PinRecordModel) -> PinRecord:
    return PinRecord(
        content_id=row.content_id,
        owner_id=row.owner_id,
        commitment_hash=row.commitment_hash,
        durable=row.durable,
        kind=row.kind,
        pinned_at=row.pinned_at,
        verified_at=row.verified_at,
    )


def _pin_list_stats(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError("pin list response is not an object")
    rows = data.get("rows") or []
    if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
        raise ValueError("pin list rows are not objects")
    return {
        "count": int(data.get("count", 0)),
        "size": sum(int(row.get("size", 0)) for row in rows),
        "local": False,
    }


class PinningService:
    """Pin, fetch and maintain opaque JSON payloads.

    Args:
        write_url: Base URL of the pinning API
        read_gateways: Gateway base URLs, highest priority first
        attempts: Write attempts before degraded mode (also verify attempts)
        backoff_seconds: Base delay, doubled after each failed attempt
        database: Transactional store for pin records; without one, records
            are returned to the caller but not kept
        local_capacity: Payloads kept in the local ephemeral store
        client: Shared httpx.AsyncClient (injected in tests)
        sleep: Awaitable sleep used between attempts (injected in tests)
    """

    def __init__(
        self,
        write_url: str,
        read_gateways: List[str],
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        write_timeout: float = 30.0,
        read_timeout: float = 15.0,
        database: Optional[Database] = None,
        store_timeout: float = 10.0,
        local_capacity: int = 1024,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if not read_gateways:
            raise ValueError("at least one read gateway is required")
        self.write_url = write_url.rstrip("/")
        self.read_gateways = [g.rstrip("/") for g in read_gateways]
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.write_timeout = write_timeout
        self.read_timeout = read_timeout
        self.database = database
        self.store_timeout = store_timeout
        self.local_capacity = local_capacity
        self.sleep = sleep
        self.clock = clock

        headers = {}
        if api_key:
            headers["pinata_api_key"] = api_key
        if api_secret:
            headers["pinata_secret_api_key"] = api_secret
        self._headers = headers
        self._client = client or httpx.AsyncClient()

        self._local: "OrderedDict[str, Any]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "PinningService":
        return cls(
            write_url=settings.pin_write_url,
            read_gateways=settings.pin_read_gateways,
            api_key=settings.pin_api_key,
            api_secret=settings.pin_api_secret,
            attempts=settings.pin_attempts,
            backoff_seconds=settings.pin_backoff_seconds,
            write_timeout=settings.pin_write_timeout,
            read_timeout=settings.pin_read_timeout,
            store_timeout=settings.store_timeout,
            local_capacity=settings.pin_local_capacity,
            **kwargs,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # Writes

    async def pin(
        self,
        payload: Any,
        owner_id: Optional[str] = None,
        commitment_hash: Optional[str] = None,
    ) -> PinResult:
        """Pin ``payload``, verifying each successful write.

        Never raises for storage network failures: after ``attempts`` failed
        write/verify rounds the payload is kept locally and the result is
        marked non-durable.

        Raises:
            TransientIOError: If the pin record could not be stored
        """
        content_id, durable = await self._pin(payload, owner_id)
        if commitment_hash is None:
            commitment_hash = (
                "0x" + hashlib.sha256(_canonical(payload).encode("utf-8")).hexdigest()
            )
        record = PinRecord(
            content_id=content_id,
            owner_id=owner_id,
            commitment_hash=commitment_hash,
            durable=durable,
            kind=PAYLOAD,
            verified_at=utc_now() if durable else None,
        )
        await self._save_record(record)
        return PinResult(content_id, durable, record)

    async def pin_subject_data(self, owner_id: str, payload: Dict[str, Any]) -> PinResult:
        """Pin a subject's data and bind it to a fresh commitment hash.

        commitment = "0x" + sha256({"userId", "cid", "timestamp"})
        """
        content_id, durable = await self._pin(payload, owner_id)
        commitment = json.dumps(
            {
                "userId": owner_id,
                "cid": content_id,
                "timestamp": int(self.clock() * 1000),
            },
            separators=(",", ":"),
        )
        record = PinRecord(
            content_id=content_id,
            owner_id=owner_id,
            commitment_hash="0x" + hashlib.sha256(commitment.encode("utf-8")).hexdigest(),
            durable=durable,
            kind=SUBJECT_DATA,
            verified_at=utc_now() if durable else None,
        )
        await self._save_record(record)
        logger.info(
            "subject_data_pinned",
            owner_id=owner_id,
            content_id=content_id,
            durable=durable,
        )
        return PinResult(content_id, durable, record)

    async def _pin(self, payload: Any, owner_id: Optional[str]) -> Tuple[str, bool]:
        log = logger.bind(owner_id=owner_id)

        for attempt in range(1, self.attempts + 1):
            try:
                content_id = await self._write(payload, owner_id)
            except TransientIOError as e:
                log.warning("pin_write_failed", attempt=attempt, error=e.message)
            else:
                if await self._verify_with_retry(content_id):
                    self._remember(content_id, payload)
                    log.info("pin_durable", content_id=content_id, attempt=attempt)
                    return content_id, True
                log.warning("pin_verify_failed", content_id=content_id, attempt=attempt)

            if attempt < self.attempts:
                await self.sleep(backoff_delay(attempt, self.backoff_seconds))

        content_id = local_content_id(payload)
        self._remember(content_id, payload)
        log.error("pin_degraded", content_id=content_id, attempts=self.attempts)
        return content_id, False

    async def _write(self, payload: Any, owner_id: Optional[str]) -> str:
        name = f"data_{int(self.clock() * 1000)}"
        if owner_id:
            name = f"subject_{owner_id}_{int(self.clock() * 1000)}"
        body = {
            "pinataContent": payload,
            "pinataMetadata": {"name": name},
            "pinataOptions": {"cidVersion": 1},
        }
        try:
            response = await self._client.post(
                f"{self.write_url}/pinning/pinJSONToIPFS",
                json=body,
                headers=self._headers,
                timeout=self.write_timeout,
            )
        except httpx.HTTPError as e:
            raise TransientIOError(f"pin write failed: {e}") from e

        if response.status_code >= 400:
            raise TransientIOError(f"pin write returned {response.status_code}")

        try:
            return response.json()["IpfsHash"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransientIOError(f"malformed pin response: {e}") from e

    async def _pin_count(self, content_id: str) -> int:
        try:
            response = await self._client.get(
                f"{self.write_url}/data/pinList",
                params={"hashContains": content_id},
                headers=self._headers,
                timeout=self.read_timeout,
            )
        except httpx.HTTPError as e:
            raise TransientIOError(f"pin list failed: {e}") from e
        if response.status_code >= 400:
            raise TransientIOError(f"pin list returned {response.status_code}")
        try:
            return int(response.json().get("count", 0))
        except (ValueError, TypeError, AttributeError) as e:
            raise TransientIOError(f"malformed pin list response: {e}") from e

    async def _verify_with_retry(self, content_id: str) -> bool:
        for attempt in range(1, self.attempts + 1):
            try:
                if await self._pin_count(content_id) > 0:
                    return True
            except TransientIOError as e:
                logger.warning(
                    "pin_verify_attempt_failed",
                    content_id=content_id,
                    attempt=attempt,
                    error=e.message,
                )
            if attempt < self.attempts:
                await self.sleep(backoff_delay(attempt, self.backoff_seconds))
        return False

    # Reads

    async def get(self, content_id: str) -> Any:
        """Fetch a payload from the first gateway that answers.

        Raises:
            NotFoundError: If no gateway and no local copy has it
        """
        if not is_local(content_id):
            for gateway in self.read_gateways:
                url = f"{gateway}/{content_id}"
                try:
                    response = await self._client.get(url, timeout=self.read_timeout)
                except httpx.HTTPError as e:
                    logger.warning("gateway_read_failed", gateway=gateway, error=str(e))
                    continue
                if response.status_code != 200:
                    logger.warning(
                        "gateway_read_failed",
                        gateway=gateway,
                        status_code=response.status_code,
                    )
                    continue
                try:
                    data = response.json()
                except ValueError:
                    logger.warning("gateway_read_malformed", gateway=gateway)
                    continue
                logger.debug("gateway_read_ok", gateway=gateway, content_id=content_id)
                return data
            logger.error("gateways_exhausted", content_id=content_id)

        if content_id in self._local:
            self._local.move_to_end(content_id)
            return self._local[content_id]
        raise NotFoundError("Content", content_id)

    # Maintenance

    async def verify(self, content_id: str) -> MaintenanceResult:
        """Check that a pin exists remotely. Never raises."""
        if is_local(content_id):
            return MaintenanceResult.degraded(
                value=content_id in self._local, error="non-durable identifier"
            )
        try:
            pinned = await self._pin_count(content_id) > 0
        except TransientIOError as e:
            logger.warning("pin_verify_failed", content_id=content_id, error=e.message)
            return MaintenanceResult.failed(e.message, value=False)

        if pinned:
            try:
                await self._mark_verified(content_id)
            except TransientIOError as e:
                return MaintenanceResult.degraded(value=True, error=e.message)
        return MaintenanceResult.success(pinned)

    async def unpin(self, content_id: str) -> MaintenanceResult:
        """Remove a pin. Never raises."""
        if is_local(content_id):
            existed = self._local.pop(content_id, None) is not None
            return MaintenanceResult.degraded(value=existed, error="non-durable identifier")
        try:
            response = await self._client.delete(
                f"{self.write_url}/pinning/unpin/{content_id}",
                headers=self._headers,
                timeout=self.write_timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("unpin_failed", content_id=content_id, error=str(e))
            return MaintenanceResult.failed(str(e), value=False)
        if response.status_code >= 400:
            logger.warning(
                "unpin_failed", content_id=content_id, status_code=response.status_code
            )
            return MaintenanceResult.failed(
                f"unpin returned {response.status_code}", value=False
            )
        self._local.pop(content_id, None)
        logger.info("unpinned", content_id=content_id)
        return MaintenanceResult.success(True)

    async def stats(self) -> MaintenanceResult:
        """Pin count and size. Falls back to local counts when unreachable."""
        local = {"count": len(self._local), "size": 0, "local": True}
        try:
            response = await self._client.get(
                f"{self.write_url}/data/pinList",
                params={"pageLimit": 1},
                headers=self._headers,
                timeout=self.read_timeout,
            )
            response.raise_for_status()
            return MaintenanceResult.success(_pin_list_stats(response.json()))
        except (httpx.HTTPError, ValueError, TypeError) as e:
            logger.warning("pin_stats_unavailable", error=str(e))
            return MaintenanceResult.degraded(value=local, error=str(e))

    # Local ephemeral store

    def _remember(self, content_id: str, payload: Any) -> None:
        self._local[content_id] = payload
        self._local.move_to_end(content_id)
        while len(self._local) > self.local_capacity:
            evicted, _ = self._local.popitem(last=False)
            logger.debug("local_payload_evicted", content_id=evicted)

    # Records

    async def _in_store(self, work: Callable[["PinRecordRepository"], Any]) -> Any:
        from ..db.repositories import PinRecordRepository

        def _run() -> Any:
            with self.database.transaction() as session:
                return work(PinRecordRepository(session))

        try:
            return await asyncio.wait_for(asyncio.to_thread(_run), timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            raise TransientIOError("pin record store timed out") from e
        except SQLAlchemyError as e:
            raise TransientIOError(f"pin record store failed: {e}") from e

    async def _save_record(self, record: PinRecord) -> None:
        if self.database is None:
            return
        await self._in_store(
            lambda repo: repo.save(
                content_id=record.content_id,
                owner_id=record.owner_id,
                commitment_hash=record.commitment_hash,
                durable=record.durable,
                kind=record.kind,
                pinned_at=record.pinned_at,
                verified_at=record.verified_at,
            )
        )

    async def _mark_verified(self, content_id: str) -> None:
        if self.database is None:
            return
        await self._in_store(lambda repo: repo.mark_verified(content_id, utc_now()))

    async def find_by_commitment(
        self, commitment_hash: str, kind: Optional[str] = None
    ) -> Optional[PinRecord]:
        if self.database is None:
            return None

        def _find(repo: PinRecordRepository) -> Optional[PinRecord]:
            row = repo.find_by_commitment(commitment_hash, kind)
            return _to_record(row) if row is not None else None

        return await self._in_store(_find)

    async def latest_for_owner(
        self, owner_id: str, kind: Optional[str] = None
    ) -> Optional[PinRecord]:
        if self.database is None:
            return None

        def _find(repo: PinRecordRepository) -> Optional[PinRecord]:
            row = repo.latest_for_owner(owner_id, kind)
            return _to_record(row) if row is not None else None

        return await self._in_store(_find)
