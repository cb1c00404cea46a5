import pytest

from segmentation.features.segments.domain import (
    Contact,
    ContactStatus,
    DefinitionValidationError,
    SegmentDefinition,
)
from segmentation.features.segments.pipeline import compile_definition, parse_definition
from tests.conftest import make_contact


def test_parse_accepts_snake_and_camel_case_keys():
    snake = parse_definition(
        {
            "status": "active",
            "email_contains": "@example.com",
            "gdpr_consent": True,
            "in_list_ids": [2, 1],
            "not_in_list_ids": [3],
        }
    )
    camel = parse_definition(
        {
            "status": "active",
            "emailContains": "@example.com",
            "gdprConsent": True,
            "inListIds": [1, 2],
            "notInListIds": [3],
        }
    )

    assert snake == camel
    assert snake.status is ContactStatus.ACTIVE
    assert snake.in_list_ids == frozenset({1, 2})


def test_empty_values_mean_no_constraint():
    definition = parse_definition(
        {"status": "", "email_contains": "   ", "in_list_ids": [], "not_in_list_ids": None}
    )

    assert definition == SegmentDefinition()
    assert definition.is_empty
    assert definition.to_dict() == {}


def test_none_definition_is_empty():
    assert parse_definition(None).is_empty


@pytest.mark.parametrize(
    "raw, field",
    [
        ({"status": "deleted"}, "status"),
        ({"status": 1}, "status"),
        ({"emailContains": 42}, "emailContains"),
        ({"gdpr_consent": "yes"}, "gdpr_consent"),
        ({"in_list_ids": ["1"]}, "in_list_ids"),
        ({"notInListIds": [True]}, "notInListIds"),
        ({"in_list_ids": 5}, "in_list_ids"),
        ({"in_list_ids": "1,2"}, "in_list_ids"),
        ({"segment_type": "vip"}, "segment_type"),
        ({"in_list_ids": [1], "inListIds": [2]}, "inListIds"),
    ],
)
def test_invalid_definitions_name_the_field(raw, field):
    with pytest.raises(DefinitionValidationError) as exc_info:
        parse_definition(raw)

    assert exc_info.value.field == field


def test_non_object_definition_rejected():
    with pytest.raises(DefinitionValidationError) as exc_info:
        parse_definition(["status", "active"])

    assert exc_info.value.field == "definition"


def test_to_dict_round_trips_through_parse():
    definition = parse_definition({"inListIds": [5, 3], "gdprConsent": False})

    assert definition.to_dict() == {"gdpr_consent": False, "in_list_ids": [3, 5]}
    assert parse_definition(definition.to_dict()) == definition


def test_empty_predicate_matches_everything():
    predicate = compile_definition(SegmentDefinition())

    assert not predicate.needs_memberships
    assert predicate(make_contact(1, status="bounced"))
    assert predicate(make_contact(2, email="", status=None))


def test_status_clause():
    predicate = compile_definition({"status": "active"})

    assert predicate(make_contact(1, status="active"))
    assert not predicate(make_contact(2, status="unsubscribed"))
    assert not predicate(make_contact(3, status=None))


def test_email_contains_is_case_insensitive():
    predicate = compile_definition({"email_contains": "@Example.COM"})

    assert predicate(make_contact(1, email="Alice@EXAMPLE.com"))
    assert not predicate(make_contact(2, email="bob@example.org"))


def test_email_contains_never_matches_missing_email():
    predicate = compile_definition({"email_contains": "a"})

    assert not predicate(make_contact(1, email=""))
    assert not predicate(Contact(id=2, email=None, name=None, status=ContactStatus.ACTIVE, gdpr_consent=False))


def test_email_case_folding_is_ascii_only():
    predicate = compile_definition({"email_contains": "É"})

    assert predicate(make_contact(1, email="É@example.com"))
    assert not predicate(make_contact(2, email="é@example.com"))


def test_gdpr_and_email_both_required():
    predicate = compile_definition({"gdpr_consent": True, "email_contains": "@example.com"})

    assert predicate(make_contact(1, email="a@example.com", gdpr_consent=True))
    assert not predicate(make_contact(2, email="a@other.net", gdpr_consent=True))
    assert not predicate(make_contact(3, email="a@example.com", gdpr_consent=False))


def test_in_list_ids_requires_any_membership():
    predicate = compile_definition({"in_list_ids": [1, 2]})

    assert predicate.needs_memberships
    assert predicate(make_contact(1), frozenset({1}))
    assert predicate(make_contact(2), frozenset({2, 9}))
    assert not predicate(make_contact(3), frozenset({9}))
    assert not predicate(make_contact(4))


def test_not_in_list_ids_requires_no_membership():
    predicate = compile_definition({"not_in_list_ids": [3]})

    assert predicate(make_contact(1))
    assert predicate(make_contact(2), frozenset({1}))
    assert not predicate(make_contact(3), frozenset({3}))


def test_overlapping_list_ids_warn_and_exclusion_wins():
    predicate = compile_definition({"in_list_ids": [1, 2], "not_in_list_ids": [1]})

    assert len(predicate.warnings) == 1
    assert "exclusion wins" in predicate.warnings[0]
    # only reachable through list 1, which is excluded
    assert not predicate(make_contact(1), frozenset({1}))
    # satisfied through list 2 but still excluded by list 1
    assert not predicate(make_contact(2), frozenset({1, 2}))
    # satisfied through list 2 alone
    assert predicate(make_contact(3), frozenset({2}))


def test_missing_lists_are_ignored_not_fatal():
    predicate = compile_definition(
        {"in_list_ids": [1, 99], "not_in_list_ids": [98]}, known_list_ids={1}
    )

    assert any("no longer exist" in warning for warning in predicate.warnings)
    assert predicate(make_contact(1), frozenset({1}))
    assert not predicate(make_contact(2), frozenset({99}))


def test_inclusion_of_only_deleted_lists_matches_nothing():
    predicate = compile_definition({"in_list_ids": [99]}, known_list_ids=set())

    assert not predicate(make_contact(1))
    assert not predicate(make_contact(2), frozenset({99}))


def test_exclusion_of_only_deleted_lists_is_a_no_op():
    predicate = compile_definition({"not_in_list_ids": [98]}, known_list_ids=set())

    assert not predicate.needs_memberships
    assert predicate(make_contact(1))


def test_adding_clauses_only_narrows():
    contacts = [
        (make_contact(1, email="a@example.com", status="active", gdpr_consent=True), frozenset({1})),
        (make_contact(2, email="b@example.com", status="active"), frozenset({2})),
        (make_contact(3, email="c@other.net", status="bounced", gdpr_consent=True), frozenset()),
        (make_contact(4, email="d@example.com", status="inactive"), frozenset({1, 3})),
    ]
    steps = [
        {},
        {"status": "active"},
        {"status": "active", "email_contains": "example"},
        {"status": "active", "email_contains": "example", "in_list_ids": [1, 2]},
        {"status": "active", "email_contains": "example", "in_list_ids": [1, 2], "not_in_list_ids": [2]},
    ]

    previous = None
    for raw in steps:
        predicate = compile_definition(raw)
        matched = {contact.id for contact, lists in contacts if predicate(contact, lists)}
        if previous is not None:
            assert matched <= previous
        previous = matched

    assert previous == {1}
