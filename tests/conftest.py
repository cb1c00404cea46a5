from collections.abc import Collection, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from segmentation.auth.verify import auth_dependency
from segmentation.db.helpers import DatabaseError
from segmentation.features.segments.cache import MaterializationCache
from segmentation.features.segments.domain import (
    Contact,
    ContactStatus,
    Materialization,
    Segment,
    SegmentDefinition,
    SegmentNotFound,
    StaleBuild,
)
from segmentation.features.segments.pipeline import MembershipEvaluator
from segmentation.features.segments.services import SegmentService


def make_contact(
    contact_id: int,
    email: str | None = None,
    *,
    status: str | None = "active",
    gdpr_consent: bool = False,
    name: str | None = None,
) -> Contact:
    return Contact(
        id=contact_id,
        email=email if email is not None else f"user{contact_id}@example.com",
        name=name,
        status=ContactStatus(status) if status else None,
        gdpr_consent=gdpr_consent,
    )


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.available = True

    async def ping(self) -> bool:
        return self.available

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool | None:
        if not self.available:
            return None
        if key in self.store:
            return False
        self.store[key] = value
        return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        if self.store.get(key) != expected:
            return False
        del self.store[key]
        return True


class FakeContactSource:
    """In-memory contact + list membership store."""

    def __init__(self, contacts: Sequence[Contact] = (), memberships=None, list_ids=None):
        self.contacts = {contact.id: contact for contact in contacts}
        self.memberships: dict[int, set[int]] = {
            cid: set(lids) for cid, lids in (memberships or {}).items()
        }
        self.list_ids: set[int] = set(list_ids) if list_ids is not None else {
            lid for lids in self.memberships.values() for lid in lids
        }
        self.fail_fetch_from: int | None = None
        self.membership_calls = 0
        self.fetched_ranges: list[tuple[int, int]] = []

    def add(self, contact: Contact, *list_ids: int) -> None:
        self.contacts[contact.id] = contact
        if list_ids:
            self.memberships.setdefault(contact.id, set()).update(list_ids)
            self.list_ids.update(list_ids)

    async def batch_ranges(self, batch_size: int) -> list[tuple[int, int]]:
        ids = sorted(self.contacts)
        starts = ids[::batch_size]
        ends = starts[1:] + [ids[-1] + 1] if ids else []
        return list(zip(starts, ends))

    async def fetch_contacts(self, start_id: int, end_id: int) -> list[Contact]:
        self.fetched_ranges.append((start_id, end_id))
        if self.fail_fetch_from is not None and end_id > self.fail_fetch_from:
            raise DatabaseError("connection reset", operation="fetch_all")
        return [self.contacts[cid] for cid in sorted(self.contacts) if start_id <= cid < end_id]

    async def fetch_memberships(self, contact_ids: Sequence[int]) -> dict[int, frozenset[int]]:
        self.membership_calls += 1
        return {
            cid: frozenset(self.memberships[cid]) for cid in contact_ids if cid in self.memberships
        }

    async def existing_list_ids(self, list_ids: Collection[int]) -> frozenset[int]:
        return frozenset(lid for lid in list_ids if lid in self.list_ids)


class FakeSegmentRepository:
    """In-memory stand-in for SegmentRepository with the same write rules."""

    def __init__(self):
        self.segments: dict[int, Segment] = {}
        self._next_id = 1

    def _now(self) -> datetime:
        return datetime(2026, 1, 1, tzinfo=UTC)

    async def create(self, name: str, definition: SegmentDefinition) -> Segment:
        segment = Segment(
            id=self._next_id,
            name=name,
            definition=definition,
            materialized_count=None,
            last_built_at=None,
            created_at=self._now(),
            updated_at=self._now(),
        )
        self.segments[segment.id] = segment
        self._next_id += 1
        return replace(segment)

    async def get(self, segment_id: int) -> Segment:
        if segment_id not in self.segments:
            raise SegmentNotFound(segment_id)
        return replace(self.segments[segment_id])

    async def update(self, segment_id, *, name=None, definition=None) -> Segment:
        segment = self.segments.get(segment_id)
        if segment is None:
            raise SegmentNotFound(segment_id)
        if name is not None:
            segment.name = name
        if definition is not None:
            segment.definition = definition
        return replace(segment)

    async def update_definition(self, segment_id, definition) -> Segment:
        return await self.update(segment_id, definition=definition)

    async def rename(self, segment_id, name) -> Segment:
        return await self.update(segment_id, name=name)

    async def delete(self, segment_id: int) -> None:
        if self.segments.pop(segment_id, None) is None:
            raise SegmentNotFound(segment_id)

    async def list_segments(self, page=1, per_page=25, search=None):
        items = sorted(self.segments.values(), key=lambda s: s.id)
        if search:
            items = [s for s in items if search.lower() in s.name.lower()]
        start = (page - 1) * per_page
        return [replace(s) for s in items[start : start + per_page]], len(items)

    async def list_stale(self, older_than: datetime, limit: int) -> list[Segment]:
        stale = [
            s
            for s in self.segments.values()
            if s.last_built_at is None or s.last_built_at < older_than
        ]
        return [replace(s) for s in sorted(stale, key=lambda s: s.id)[:limit]]

    async def read_materialization(self, segment_id: int) -> Materialization | None:
        segment = await self.get(segment_id)
        if segment.last_built_at is None:
            return None
        return Materialization(segment_id, segment.materialized_count, segment.last_built_at)

    async def write_materialization(self, segment_id, match_count, built_at) -> Materialization:
        segment = self.segments.get(segment_id)
        if segment is None:
            raise SegmentNotFound(segment_id)
        if segment.last_built_at is not None and built_at <= segment.last_built_at:
            raise StaleBuild(segment_id)
        segment.materialized_count = match_count
        segment.last_built_at = built_at
        return Materialization(segment_id, match_count, built_at)


class FrozenClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def contact_source():
    return FakeContactSource()


@pytest.fixture
def segment_repository():
    return FakeSegmentRepository()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def make_service(fake_redis, contact_source, segment_repository, clock):
    def _make(**overrides) -> SegmentService:
        source = overrides.pop("contact_source", contact_source)
        evaluator = MembershipEvaluator(
            source,
            sample_size=overrides.pop("sample_size", 50),
            batch_size=overrides.pop("batch_size", 4),
            max_concurrency=overrides.pop("max_concurrency", 3),
        )
        return SegmentService(
            repository=segment_repository,
            contact_source=source,
            cache=MaterializationCache(
                lease_store=fake_redis, repository=segment_repository, lease_ttl_s=60
            ),
            evaluator=evaluator,
            clock=clock,
            **overrides,
        )

    return _make
