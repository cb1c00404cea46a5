"""
Segment definition parsing and predicate compilation.

`parse_definition` turns the loosely typed JSON a client (or the database)
hands us into an immutable `SegmentDefinition`, failing with a field-named
`DefinitionValidationError`. `compile_definition` turns that value into a
`Predicate`: a pure callable over one contact and the set of list ids the
contact belongs to.
"""

import string
from collections.abc import Collection, Mapping
from typing import Any

from segmentation.features.segments.domain import (
    Contact,
    ContactStatus,
    DefinitionValidationError,
    SegmentDefinition,
)
from segmentation.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Wire key -> canonical clause. Both the snake_case storage form and the
# camelCase client form are accepted.
_CLAUSE_KEYS: dict[str, str] = {
    "status": "status",
    "email_contains": "email_contains",
    "emailContains": "email_contains",
    "gdpr_consent": "gdpr_consent",
    "gdprConsent": "gdpr_consent",
    "in_list_ids": "in_list_ids",
    "inListIds": "in_list_ids",
    "not_in_list_ids": "not_in_list_ids",
    "notInListIds": "not_in_list_ids",
}

_STATUS_VALUES = {status.value: status for status in ContactStatus}

# ASCII-only case folding; non-ASCII letters compare exactly.
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def ascii_lower(value: str) -> str:
    return value.translate(_ASCII_LOWER)


def _parse_status(field: str, value: Any) -> ContactStatus | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or value not in _STATUS_VALUES:
        allowed = ", ".join(sorted(_STATUS_VALUES))
        raise DefinitionValidationError(field, f"must be one of: {allowed}")
    return _STATUS_VALUES[value]


def _parse_email_contains(field: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise DefinitionValidationError(field, "must be a string")
    value = value.strip()
    return value or None


def _parse_gdpr_consent(field: str, value: Any) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise DefinitionValidationError(field, "must be a boolean")
    return value


def _parse_list_ids(field: str, value: Any) -> frozenset[int] | None:
    if value is None:
        return None
    if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Collection):
        raise DefinitionValidationError(field, "must be a list of integer list ids")

    ids: set[int] = set()
    for item in value:
        # bool is an int subclass; True is not a list id
        if isinstance(item, bool) or not isinstance(item, int):
            raise DefinitionValidationError(field, f"list id {item!r} is not an integer")
        ids.add(item)

    return frozenset(ids) or None


_PARSERS = {
    "status": _parse_status,
    "email_contains": _parse_email_contains,
    "gdpr_consent": _parse_gdpr_consent,
    "in_list_ids": _parse_list_ids,
    "not_in_list_ids": _parse_list_ids,
}


def parse_definition(raw: Mapping[str, Any] | None) -> SegmentDefinition:
    """
    Validate a raw definition and build the immutable value.

    Absent, null, empty-string and empty-list clauses all mean "no
    constraint". Unknown keys and badly typed values are rejected with the
    offending wire key as the error field.
    """
    if raw is None:
        return SegmentDefinition()
    if not isinstance(raw, Mapping):
        raise DefinitionValidationError("definition", "must be an object")

    clauses: dict[str, Any] = {}
    seen_from: dict[str, str] = {}
    for key, value in raw.items():
        clause = _CLAUSE_KEYS.get(key)
        if clause is None:
            raise DefinitionValidationError(str(key), "unknown clause")
        if clause in seen_from:
            raise DefinitionValidationError(key, f"duplicates clause given as '{seen_from[clause]}'")
        seen_from[clause] = key
        clauses[clause] = _PARSERS[clause](key, value)

    return SegmentDefinition(**clauses)


class Predicate:
    """
    Executable form of a segment definition.

    Calling the predicate never performs I/O. `needs_memberships` tells the
    evaluator whether list edges have to be loaded at all.
    """

    __slots__ = ("definition", "warnings", "_needle", "_in_ids", "_not_in_ids")

    def __init__(
        self,
        definition: SegmentDefinition,
        *,
        in_list_ids: frozenset[int] | None,
        not_in_list_ids: frozenset[int] | None,
        warnings: tuple[str, ...] = (),
    ):
        self.definition = definition
        self.warnings = warnings
        self._needle = (
            ascii_lower(definition.email_contains) if definition.email_contains else None
        )
        # An inclusion set emptied by deleted lists stays present and matches nothing
        self._in_ids = in_list_ids
        self._not_in_ids = not_in_list_ids or None

    @property
    def needs_memberships(self) -> bool:
        return self._in_ids is not None or self._not_in_ids is not None

    def __call__(self, contact: Contact, member_list_ids: frozenset[int] = frozenset()) -> bool:
        definition = self.definition

        if definition.status is not None and contact.status != definition.status:
            return False

        if self._needle is not None:
            if not contact.email or self._needle not in ascii_lower(contact.email):
                return False

        if definition.gdpr_consent is not None and contact.gdpr_consent != definition.gdpr_consent:
            return False

        if self._in_ids is not None and self._in_ids.isdisjoint(member_list_ids):
            return False

        if self._not_in_ids is not None and not self._not_in_ids.isdisjoint(member_list_ids):
            return False

        return True

    def __repr__(self) -> str:
        return f"Predicate({self.definition.to_dict()!r})"


def compile_definition(
    definition: SegmentDefinition | Mapping[str, Any] | None,
    known_list_ids: Collection[int] | None = None,
) -> Predicate:
    """
    Compile a definition into a `Predicate`.

    Args:
        definition: A parsed definition, or raw JSON to parse first
        known_list_ids: List ids that currently exist. When given, ids that
            no longer exist are dropped from the list clauses with a warning
            instead of failing compilation.

    Raises:
        DefinitionValidationError: when a raw definition is malformed
    """
    if not isinstance(definition, SegmentDefinition):
        definition = parse_definition(definition)

    warnings: list[str] = []
    in_ids = definition.in_list_ids
    not_in_ids = definition.not_in_list_ids

    if in_ids and not_in_ids:
        overlap = in_ids & not_in_ids
        if overlap:
            warnings.append(
                "List ids "
                f"{sorted(overlap)} appear in both in_list_ids and not_in_list_ids; "
                "exclusion wins for those lists"
            )

    if known_list_ids is not None:
        known = frozenset(known_list_ids)
        missing = definition.referenced_list_ids - known
        if missing:
            warnings.append(f"List ids {sorted(missing)} no longer exist and are ignored")
            if in_ids is not None:
                in_ids = in_ids & known
            if not_in_ids is not None:
                not_in_ids = not_in_ids & known

    if warnings:
        logger.warning("Segment definition compiled with warnings", warnings=warnings)

    return Predicate(
        definition,
        in_list_ids=in_ids,
        not_in_list_ids=not_in_ids,
        warnings=tuple(warnings),
    )
