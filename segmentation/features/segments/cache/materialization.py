"""
Materialized build results for segments.

Counts live on the segments row (see SegmentRepository); this module adds
the exclusive per-segment build lease, held in Redis, and the
last-writer-wins-by-built_at write rule. Nothing here reacts to contact
or list changes: a stale count is only visible as an old last_built_at.
"""

import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from segmentation.config import settings
from segmentation.features.segments.domain import (
    BuildInProgress,
    Materialization,
    SourceUnavailable,
)
from segmentation.features.segments.repository import SegmentRepository
from segmentation.infrastructure.observability.logging import get_logger
from segmentation.services.redis_client import fast_redis

logger = get_logger(__name__)


def _lease_key(segment_id: int) -> str:
    return f"segments:build_lease:{segment_id}"


class MaterializationCache:
    """Build lease + persisted (count, built_at) per segment."""

    def __init__(self, lease_store=None, repository=None, lease_ttl_s: int | None = None):
        self._lease_store = lease_store or fast_redis
        self._repository = repository or SegmentRepository
        self._lease_ttl_s = lease_ttl_s or settings.SEGMENT_BUILD_LEASE_TTL_S

    @asynccontextmanager
    async def lease(self, segment_id: int) -> AsyncIterator[str]:
        """
        Hold the exclusive build lease for a segment.

        Raises:
            BuildInProgress: another build holds the lease
            SourceUnavailable: the lease store could not be reached
        """
        key = _lease_key(segment_id)
        token = secrets.token_urlsafe(16)

        acquired = await self._lease_store.set_if_absent(key, token, self._lease_ttl_s)
        if acquired is None:
            raise SourceUnavailable("Build lease store is unavailable")
        if not acquired:
            logger.info("Build rejected, lease held", segment_id=segment_id)
            raise BuildInProgress(segment_id)

        logger.debug("Build lease acquired", segment_id=segment_id, ttl_s=self._lease_ttl_s)
        try:
            yield token
        finally:
            released = await self._lease_store.compare_and_delete(key, token)
            if not released:
                logger.warning(
                    "Build lease expired or was lost before release",
                    segment_id=segment_id,
                    ttl_s=self._lease_ttl_s,
                )

    async def read(self, segment_id: int) -> Materialization | None:
        return await self._repository.read_materialization(segment_id)

    async def persist(self, segment_id: int, match_count: int, built_at: datetime) -> Materialization:
        """Store a build result. Raises StaleBuild when a newer one is stored."""
        return await self._repository.write_materialization(segment_id, match_count, built_at)
