"""
Streaming membership evaluation.

The contact source splits the population into contiguous id ranges that
each hold at most `batch_size` existing contacts, so the number of batches
follows the number of contacts rather than the spread of their ids. Up to
`max_concurrency` batches are fetched at once; each finished
batch is merged into one accumulator owned by the evaluate() call. The
sample keeps the N smallest matching ids, so it comes out in ascending id
order no matter which batch finishes first.

Dry runs and builds go through exactly the same scan. Persisting a build
is the caller's job and only happens after evaluate() returns.
"""

import asyncio
import heapq
import time
from collections.abc import Collection, Sequence
from typing import Protocol

from segmentation.db.helpers import DatabaseError
from segmentation.features.segments.domain import (
    Contact,
    ContactSummary,
    EvaluationMode,
    EvaluationResult,
    SourceUnavailable,
)
from segmentation.features.segments.pipeline.compiler import Predicate
from segmentation.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_NO_LISTS: frozenset[int] = frozenset()

# Collaborator read failures. Anything else is a bug and propagates as-is.
_SOURCE_ERRORS = (DatabaseError, OSError)


class ContactSource(Protocol):
    """Read-only view of the contact and list membership stores."""

    async def batch_ranges(self, batch_size: int) -> list[tuple[int, int]]:
        """
        Ascending, contiguous [start_id, end_id) ranges covering every contact,
        each holding at most batch_size contacts. Empty when there are none.
        """

    async def fetch_contacts(self, start_id: int, end_id: int) -> list[Contact]:
        """Contacts with start_id <= id < end_id."""

    async def fetch_memberships(self, contact_ids: Sequence[int]) -> dict[int, frozenset[int]]:
        """contact id -> ids of the lists it belongs to. Contacts with no lists may be omitted."""

    async def existing_list_ids(self, list_ids: Collection[int]) -> frozenset[int]:
        """Subset of list_ids that still exist."""


class _Accumulator:
    """Running totals for one evaluation. Only the scanning coroutine writes to it."""

    __slots__ = ("match_count", "_sample_size", "_heap", "_ids")

    def __init__(self, sample_size: int, collect_ids: bool):
        self.match_count = 0
        self._sample_size = sample_size
        # max-heap on id (negated) holding the smallest ids seen so far
        self._heap: list[tuple[int, Contact]] = []
        self._ids: list[int] | None = [] if collect_ids else None

    def merge(self, matches: list[Contact]) -> None:
        self.match_count += len(matches)
        if self._ids is not None:
            self._ids.extend(contact.id for contact in matches)

        if self._sample_size <= 0:
            return
        for contact in matches:
            entry = (-contact.id, contact)
            if len(self._heap) < self._sample_size:
                heapq.heappush(self._heap, entry)
            elif contact.id < -self._heap[0][0]:
                heapq.heapreplace(self._heap, entry)

    def sample(self) -> tuple[ContactSummary, ...]:
        ordered = sorted(self._heap, key=lambda entry: -entry[0])
        return tuple(contact.summary() for _, contact in ordered)

    def matched_ids(self) -> tuple[int, ...] | None:
        if self._ids is None:
            return None
        return tuple(sorted(self._ids))


def _merge_finished(done: set[asyncio.Task], accumulator: _Accumulator) -> None:
    """
    Merge successful batches, then raise the first batch failure.

    Every task's exception is read before raising so a second failure in
    the same wake-up is not reported as never retrieved.
    """
    failure: BaseException | None = None
    for task in done:
        error = task.exception()
        if error is None:
            accumulator.merge(task.result())
        elif failure is None:
            failure = error
    if failure is not None:
        raise failure


class MembershipEvaluator:
    """Scan the contact population through a compiled predicate."""

    def __init__(
        self,
        source: ContactSource,
        *,
        sample_size: int = 50,
        batch_size: int = 1000,
        max_concurrency: int = 4,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be positive")
        self._source = source
        self._sample_size = sample_size
        self._batch_size = batch_size
        self._max_concurrency = max_concurrency

    async def evaluate(
        self,
        predicate: Predicate,
        mode: EvaluationMode,
        *,
        sample_size: int | None = None,
        collect_ids: bool = False,
    ) -> EvaluationResult:
        """
        Count matching contacts and keep an ordered, bounded sample.

        Args:
            predicate: Compiled segment predicate
            mode: DRY_RUN or BUILD; only recorded on the result
            sample_size: Override the configured sample bound for this call
            collect_ids: Also return every matching contact id (ascending)

        Raises:
            SourceUnavailable: a contact or membership read failed. Nothing
                partial is returned.
        """
        accumulator = _Accumulator(
            self._sample_size if sample_size is None else sample_size, collect_ids
        )
        started = time.perf_counter()
        batches = 0

        try:
            ranges = await self._source.batch_ranges(self._batch_size)
            batches = await self._scan(predicate, ranges, accumulator)
        except _SOURCE_ERRORS as e:
            logger.error(
                "Contact source read failed, discarding partial evaluation",
                mode=mode.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise SourceUnavailable(f"Contact source read failed: {e}") from e

        logger.debug(
            "Membership scan complete",
            mode=mode.value,
            batches=batches,
            match_count=accumulator.match_count,
            uses_memberships=predicate.needs_memberships,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )

        return EvaluationResult(
            mode=mode,
            match_count=accumulator.match_count,
            sample=accumulator.sample(),
            matched_ids=accumulator.matched_ids(),
            warnings=list(predicate.warnings),
        )

    async def _scan(
        self,
        predicate: Predicate,
        ranges: Sequence[tuple[int, int]],
        accumulator: _Accumulator,
    ) -> int:
        pending: set[asyncio.Task] = set()
        batches = 0

        try:
            for start, end in ranges:
                pending.add(asyncio.create_task(self._evaluate_batch(predicate, start, end)))
                batches += 1
                if len(pending) >= self._max_concurrency:
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    _merge_finished(done, accumulator)

            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                _merge_finished(done, accumulator)
        finally:
            # Failure or cancellation: stop whatever is still in flight
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        return batches

    async def _evaluate_batch(self, predicate: Predicate, start: int, end: int) -> list[Contact]:
        contacts = await self._source.fetch_contacts(start, end)
        if not contacts:
            return []

        memberships: dict[int, frozenset[int]] = {}
        if predicate.needs_memberships:
            memberships = await self._source.fetch_memberships([c.id for c in contacts])

        return [
            contact
            for contact in contacts
            if predicate(contact, memberships.get(contact.id, _NO_LISTS))
        ]
