"""
Result Cache: fingerprint -> completed Artifact with a fixed TTL.

The TTL is set when the artifact is written and is not refreshed by reads.
The first artifact written for a fingerprint wins.
"""

from __future__ import annotations

from typing import Optional

import structlog

from ..kv import KeyValueStore
from .models import Artifact, Fingerprint

logger = structlog.get_logger()


class ResultCache:
    def __init__(self, kv: KeyValueStore, ttl_seconds: int = 3600):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    async def get(self, fingerprint: Fingerprint) -> Optional[Artifact]:
        raw = await self.kv.get(fingerprint.cache_key)
        if raw is None:
            return None
        return Artifact.model_validate_json(raw)

    async def put(
        self,
        fingerprint: Fingerprint,
        artifact: Artifact,
        ttl: Optional[int] = None,
    ) -> bool:
        """Cache ``artifact``. Returns False if one was already cached."""
        written = await self.kv.set_if_absent(
            fingerprint.cache_key,
            artifact.model_dump_json(),
            ttl=ttl or self.ttl_seconds,
        )
        if not written:
            logger.debug("result_cache_already_set", key=fingerprint.cache_key)
        return written
