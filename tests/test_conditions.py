from datetime import datetime, timezone

import pytest

from followup.core.errors import ConditionError, MappingError
from followup.services.conditions import (
    Combinator,
    Predicate,
    collect_issues,
    evaluate,
    parse_condition,
    parse_datetime,
    values_equal,
)


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
FIELDS = {"pk": "id", "contact": "email", "status": "replyStatus", "date": "lastEmailSent", "score": "leadScore"}
ROW = {
    "id": 7,
    "email": "ana@example.com",
    "replyStatus": "NoReply",
    "lastEmailSent": "2026-10-10T09:00:00Z",
    "leadScore": "42",
    "notes": None,
}


def _eval(raw, row=ROW):
    return evaluate(parse_condition(raw), row, FIELDS, now=NOW)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ({"equals": {"field": "status", "value": "NoReply"}}, True),
        ({"equals": {"field": "status", "value": "Replied"}}, False),
        ({"equals": {"field": "replyStatus", "value": "NoReply"}}, True),
        ({"equals": {"field": "STATUS", "value": "NoReply"}}, True),
        ({"equals": {"field": "score", "value": 42}}, True),
        ({"notEquals": {"field": "status", "value": "Replied"}}, True),
        ({"in": {"field": "status", "values": ["Bounced", "NoReply"]}}, True),
        ({"greaterThan": {"field": "score", "value": 40}}, True),
        ({"lessThan": {"field": "score", "value": 40}}, False),
        ({"olderThanDays": {"field": "date", "days": 3}}, True),
        ({"olderThanDays": {"field": "date", "days": 30}}, False),
        ({"newerThanDays": {"field": "date", "days": 30}}, True),
        ({"isNotEmpty": {"field": "contact"}}, True),
        (
            {
                "all": [
                    {"equals": {"field": "status", "value": "NoReply"}},
                    {"olderThanDays": {"field": "date", "days": 3}},
                ]
            },
            True,
        ),
        (
            {
                "any": [
                    {"equals": {"field": "status", "value": "Replied"}},
                    {"olderThanDays": {"field": "date", "days": 3}},
                ]
            },
            True,
        ),
        (
            {
                "equals": {"field": "status", "value": "NoReply"},
                "olderThanDays": {"field": "date", "days": 30},
            },
            False,
        ),
        ({"all": []}, True),
        ({"any": []}, False),
    ],
)
def test_evaluate(raw, expected):
    assert _eval(raw) is expected


def test_missing_column_never_matches_except_is_empty():
    row = {"id": 1, "email": "x@example.com"}
    assert _eval({"equals": {"field": "status", "value": "NoReply"}}, row) is False
    assert _eval({"notEquals": {"field": "status", "value": "NoReply"}}, row) is False
    assert _eval({"olderThanDays": {"field": "date", "days": 1}}, row) is False
    assert _eval({"isEmpty": {"field": "status"}}, row) is True


def test_unparsable_date_fails_closed():
    row = dict(ROW, lastEmailSent="last tuesday")
    assert _eval({"olderThanDays": {"field": "date", "days": 1}}, row) is False
    assert _eval({"newerThanDays": {"field": "date", "days": 1}}, row) is False


def test_boundary_is_strictly_older():
    row = dict(ROW, lastEmailSent="2026-10-15T12:00:00+00:00")
    assert _eval({"olderThanDays": {"field": "date", "days": 3}}, row) is False
    assert _eval({"newerThanDays": {"field": "date", "days": 3}}, row) is True


def test_parse_builds_typed_tree():
    node = parse_condition(
        {"all": [{"equals": {"field": "status", "value": "NoReply"}}, {"isEmpty": {"field": "date"}}]}
    )
    assert isinstance(node, Combinator)
    assert node.op == "all"
    assert node.children[0] == Predicate(kind="equals", field="status", args={"value": "NoReply"})


@pytest.mark.parametrize(
    "raw, code",
    [
        ({}, "MISSING_OPERATOR"),
        ("not an object", "INVALID_CONDITION"),
        ({"matches": {"field": "status"}}, "UNKNOWN_OPERATOR"),
        ({"equals": {"field": "status"}}, "INVALID_EQUALS"),
        ({"olderThanDays": {"field": "date", "days": "three"}}, "INVALID_OLDER_THAN_DAYS"),
        ({"olderThanDays": {"field": "date", "days": -1}}, "INVALID_OLDER_THAN_DAYS"),
        ({"all": {"equals": {"field": "status", "value": 1}}}, "INVALID_CONDITION"),
    ],
)
def test_parse_rejects_malformed(raw, code):
    with pytest.raises(ConditionError) as excinfo:
        parse_condition(raw)
    assert excinfo.value.code == code


def test_collect_issues_reports_unresolved_fields():
    issues = collect_issues({"equals": {"field": "budget", "value": 1}}, FIELDS)
    assert [issue["code"] for issue in issues] == ["UNRESOLVED_FIELD"]
    assert collect_issues({"equals": {"field": "status", "value": "NoReply"}}, FIELDS) == []


def test_evaluate_unresolved_field_raises():
    with pytest.raises(MappingError):
        _eval({"equals": {"field": "budget", "value": 1}})


def test_values_equal_normalizes_types():
    assert values_equal(True, "true")
    assert values_equal("1.0", 1)
    assert values_equal(" NoReply ", "NoReply")
    assert not values_equal(None, "")
    assert values_equal(None, None)


def test_parse_datetime_formats():
    assert parse_datetime("2026-10-10T09:00:00Z") == datetime(2026, 10, 10, 9, 0, tzinfo=timezone.utc)
    assert parse_datetime("2026-10-10") == datetime(2026, 10, 10, tzinfo=timezone.utc)
    assert parse_datetime(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_datetime(1760000000000) == datetime.fromtimestamp(1760000000, tz=timezone.utc)
    assert parse_datetime("soon") is None
    assert parse_datetime(None) is None
