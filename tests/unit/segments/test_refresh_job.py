from datetime import timedelta

import pytest

from segmentation.features.segments.jobs import refresh_stale_segments
from tests.conftest import make_contact


@pytest.mark.asyncio
async def test_refresh_builds_never_built_and_old_segments(
    make_service, segment_repository, contact_source, clock
):
    contact_source.add(make_contact(1))
    service = make_service()
    fresh = await service.create_segment("Fresh", {})
    old = await service.create_segment("Old", {})
    never = await service.create_segment("Never", {})

    await service.build(old.id)
    clock.advance(hours=2)
    await service.build(fresh.id)

    stats = await refresh_stale_segments(
        service, segment_repository, max_age=timedelta(hours=1), limit=10, now=clock.now
    )

    assert stats.candidates == 2
    assert stats.built == 2
    assert (await service.get_segment(never.id)).materialized_count == 1
    assert (await service.get_segment(old.id)).last_built_at == clock.now
    assert (await service.get_segment(fresh.id)).last_built_at == clock.now


@pytest.mark.asyncio
async def test_refresh_skips_segments_being_built(
    make_service, segment_repository, fake_redis, clock
):
    service = make_service()
    busy = await service.create_segment("Busy", {})
    idle = await service.create_segment("Idle", {})
    fake_redis.store[f"segments:build_lease:{busy.id}"] = "other-worker"

    stats = await refresh_stale_segments(
        service, segment_repository, max_age=timedelta(hours=1), limit=10, now=clock.now
    )

    assert stats.built == 1
    assert stats.skipped_in_progress == 1
    assert (await service.get_segment(busy.id)).last_built_at is None
    assert (await service.get_segment(idle.id)).materialized_count == 0


@pytest.mark.asyncio
async def test_refresh_respects_limit(make_service, segment_repository, clock):
    service = make_service()
    for name in ("A", "B", "C"):
        await service.create_segment(name, {})

    stats = await refresh_stale_segments(
        service, segment_repository, max_age=timedelta(hours=1), limit=2, now=clock.now
    )

    assert stats.candidates == 2
    assert stats.built == 2


@pytest.mark.asyncio
async def test_refresh_skips_segment_deleted_mid_run(make_service, segment_repository, clock):
    service = make_service()
    first = await service.create_segment("First", {})
    second = await service.create_segment("Second", {})

    original_build = service.build

    async def build_then_delete(segment_id):
        result = await original_build(segment_id)
        if segment_id == first.id:
            await service.delete_segment(second.id)
        return result

    service.build = build_then_delete

    stats = await refresh_stale_segments(
        service, segment_repository, max_age=timedelta(hours=1), limit=10, now=clock.now
    )

    assert stats.built == 1
    assert stats.skipped_deleted == 1
