from datetime import datetime, timedelta, timezone

import pytest

from followup.core.errors import MappingError
from followup.services.mappings import (
    MISSING,
    build_select,
    is_stale,
    resolve_condition_field,
    resolve_contact,
    resolve_entity_pk,
    resolve_field,
    row_value,
    validate_mapping_fields,
)


FIELDS = {"pk": "id", "Contact": "email", "status": "replyStatus", "date": "lastEmailSent"}


def test_resolve_field_is_case_insensitive_on_role():
    assert resolve_field(FIELDS, "contact") == "email"
    with pytest.raises(MappingError):
        resolve_field(FIELDS, "phone")


def test_condition_field_accepts_role_or_mapped_column():
    assert resolve_condition_field(FIELDS, "status") == "replyStatus"
    assert resolve_condition_field(FIELDS, "replystatus") == "replyStatus"
    with pytest.raises(MappingError):
        resolve_condition_field(FIELDS, "budget")


def test_build_select_collects_unique_columns():
    spec = build_select(" leads ", dict(FIELDS, email="email"))
    assert spec.resource == "leads"
    assert spec.columns == ("id", "email", "replyStatus", "lastEmailSent")
    assert spec.pk_column == "id"
    assert spec.contact_column == "email"


@pytest.mark.parametrize(
    "resource, fields",
    [
        ("", FIELDS),
        ("leads", {"contact": "email"}),
        ("leads", {"pk": "id"}),
    ],
)
def test_build_select_requires_resource_pk_and_contact(resource, fields):
    with pytest.raises(MappingError):
        build_select(resource, fields)


def test_row_value_and_contact_fallback():
    row = {"ID": 5, "Phone": "+15550100"}
    assert row_value(row, "id") == 5
    assert row_value(row, "email") is MISSING
    assert resolve_contact(row, FIELDS) == "+15550100"
    assert resolve_entity_pk(row, FIELDS) == "5"
    assert resolve_contact({"email": "  "}, FIELDS) is None


def test_is_stale():
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    assert is_stale(None, now)
    assert is_stale(now - timedelta(days=31), now)
    assert not is_stale(now - timedelta(days=2), now)
    assert not is_stale(datetime(2026, 10, 17), now)


def test_validate_mapping_fields():
    assert validate_mapping_fields(FIELDS) == []
    assert [i["code"] for i in validate_mapping_fields([])] == ["INVALID_FIELDS"]
    codes = [i["code"] for i in validate_mapping_fields({"status": ""})]
    assert codes == ["INVALID_COLUMN", "MISSING_PK", "MISSING_CONTACT"]
