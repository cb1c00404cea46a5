"""
Scheduled rebuild of stale segments.

Materializations are never invalidated by contact or list writes. This job
is one of the callers that decides a count is too old and asks for a
fresh build; it does not change what a build means.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from segmentation.config import settings
from segmentation.db.pool import db_pool
from segmentation.features.segments.domain import BuildInProgress, SegmentNotFound, StaleBuild
from segmentation.features.segments.repository import SegmentRepository
from segmentation.features.segments.services.segment_service import SegmentService
from segmentation.infrastructure.observability.logging import get_logger
from segmentation.services.redis_client import fast_redis

logger = get_logger(__name__)


@dataclass(slots=True)
class RefreshStats:
    candidates: int = 0
    built: int = 0
    skipped_in_progress: int = 0
    skipped_stale: int = 0
    skipped_deleted: int = 0


async def refresh_stale_segments(
    service: SegmentService,
    repository=SegmentRepository,
    *,
    max_age: timedelta,
    limit: int,
    now: datetime | None = None,
) -> RefreshStats:
    """
    Build every segment whose last build is missing or older than max_age.

    Lease conflicts, stale writes and segments deleted mid-run are skipped.
    SourceUnavailable and timeouts stop the run: the next run starts over.
    """
    now = now or datetime.now(UTC)
    segments = await repository.list_stale(now - max_age, limit)
    stats = RefreshStats(candidates=len(segments))

    for segment in segments:
        try:
            await service.build(segment.id)
            stats.built += 1
        except BuildInProgress:
            stats.skipped_in_progress += 1
        except StaleBuild:
            stats.skipped_stale += 1
        except SegmentNotFound:
            stats.skipped_deleted += 1

    logger.info(
        "Segment refresh complete",
        candidates=stats.candidates,
        built=stats.built,
        skipped_in_progress=stats.skipped_in_progress,
        skipped_stale=stats.skipped_stale,
        skipped_deleted=stats.skipped_deleted,
    )
    return stats


async def run_segment_refresh() -> None:
    """Worker entry point: one refresh pass with its own pool and Redis client."""
    if not settings.SEGMENT_REFRESH_ENABLED:
        logger.warning("Segment refresh disabled", flag="SEGMENT_REFRESH_ENABLED")
        return

    await db_pool.initialize()
    try:
        await fast_redis.initialize()
        try:
            await refresh_stale_segments(
                SegmentService(),
                max_age=timedelta(seconds=settings.SEGMENT_REFRESH_MAX_AGE_S),
                limit=settings.SEGMENT_REFRESH_BATCH_LIMIT,
            )
        finally:
            await fast_redis.close()
    finally:
        await db_pool.close()
