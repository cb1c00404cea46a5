"""
Domain models for audience segmentation.

Contacts and list memberships are read from collaborating services and
never mutated here. Segment definitions are immutable values: an edit
produces a new definition rather than patching clauses in place.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ContactStatus(str, Enum):
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    INACTIVE = "inactive"


class EvaluationMode(str, Enum):
    DRY_RUN = "dry_run"
    BUILD = "build"


@dataclass(frozen=True, slots=True)
class Contact:
    """A contact row as seen by the evaluator."""

    id: int
    email: str | None
    name: str | None
    status: ContactStatus | None
    gdpr_consent: bool

    def summary(self) -> "ContactSummary":
        return ContactSummary(
            id=self.id,
            email=self.email,
            name=self.name,
            status=self.status.value if self.status else None,
        )


@dataclass(frozen=True, slots=True)
class ContactSummary:
    id: int
    email: str | None
    name: str | None
    status: str | None


@dataclass(frozen=True, slots=True)
class SegmentDefinition:
    """
    Declarative filter over contacts.

    Every clause is optional; None means "no constraint". Present clauses
    are combined with AND. List clauses hold at least one id when present.
    """

    status: ContactStatus | None = None
    email_contains: str | None = None
    gdpr_consent: bool | None = None
    in_list_ids: frozenset[int] | None = None
    not_in_list_ids: frozenset[int] | None = None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.status,
                self.email_contains,
                self.gdpr_consent,
                self.in_list_ids,
                self.not_in_list_ids,
            )
        )

    @property
    def referenced_list_ids(self) -> frozenset[int]:
        return (self.in_list_ids or frozenset()) | (self.not_in_list_ids or frozenset())

    def to_dict(self) -> dict[str, Any]:
        """Snake-case JSON form holding only present clauses."""
        data: dict[str, Any] = {}
        if self.status is not None:
            data["status"] = self.status.value
        if self.email_contains is not None:
            data["email_contains"] = self.email_contains
        if self.gdpr_consent is not None:
            data["gdpr_consent"] = self.gdpr_consent
        if self.in_list_ids is not None:
            data["in_list_ids"] = sorted(self.in_list_ids)
        if self.not_in_list_ids is not None:
            data["not_in_list_ids"] = sorted(self.not_in_list_ids)
        return data


@dataclass(slots=True)
class Segment:
    """Represents a segments row."""

    id: int
    name: str
    definition: SegmentDefinition
    materialized_count: int | None
    last_built_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class Materialization:
    segment_id: int
    match_count: int
    built_at: datetime


@dataclass(slots=True)
class EvaluationResult:
    """Outcome of one full scan of the contact population."""

    mode: EvaluationMode
    match_count: int
    sample: tuple[ContactSummary, ...]
    matched_ids: tuple[int, ...] | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class BuildOutcome:
    """Count movement produced by a committed build."""

    previous_count: int | None
    new_count: int

    @property
    def delta(self) -> int | None:
        if self.previous_count is None:
            return None
        return self.new_count - self.previous_count
