"""
Mapping resolution: canonical roles to tenant columns.

A mapping's ``fields`` is a plain ``{role: column}`` dict, for example
``{"pk": "id", "contact": "email", "status": "replyStatus"}``. Role
lookups are case-insensitive. Everything here is pure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..core.errors import MappingError


PK_ROLES = ("pk", "id")
CONTACT_ROLES = ("contact", "email")
ROW_CONTACT_FALLBACKS = ("email", "contact", "phone", "mobile")
STALE_AFTER_DAYS = 30

MISSING = object()


@dataclass(frozen=True)
class SelectSpec:
    resource: str
    columns: tuple[str, ...]
    pk_column: str
    contact_column: str


def _find_role(fields: dict, role: str) -> Optional[str]:
    wanted = role.strip().lower()
    for key, column in (fields or {}).items():
        if str(key).strip().lower() == wanted and isinstance(column, str) and column.strip():
            return column.strip()
    return None


def resolve_field(fields: dict, role: str) -> str:
    column = _find_role(fields, role)
    if column is None:
        raise MappingError(f"Mapping has no column for role '{role}'", field=f"fields.{role}")
    return column


def resolve_condition_field(fields: dict, field: str) -> str:
    """Resolve a condition leaf field: a role name, or a column the mapping exposes."""
    if not field or not str(field).strip():
        raise MappingError("Condition field is empty", field="condition")
    column = _find_role(fields, field)
    if column is not None:
        return column
    wanted = str(field).strip().lower()
    for mapped in (fields or {}).values():
        if isinstance(mapped, str) and mapped.strip().lower() == wanted:
            return mapped.strip()
    raise MappingError(
        f"Condition field '{field}' does not resolve through the mapping",
        field="condition",
    )


def _first_role(fields: dict, roles: tuple[str, ...]) -> Optional[str]:
    for role in roles:
        column = _find_role(fields, role)
        if column:
            return column
    return None


def resolve_pk_column(fields: dict) -> str:
    column = _first_role(fields, PK_ROLES)
    if not column:
        raise MappingError("Mapping has no primary key column (role 'pk')", field="fields.pk")
    return column


def build_select(resource: str, fields: dict) -> SelectSpec:
    if not resource or not resource.strip():
        raise MappingError("Mapping resource is empty", field="resource")
    pk_column = _first_role(fields, PK_ROLES)
    if not pk_column:
        raise MappingError("Mapping has no primary key column (role 'pk')", field="fields.pk")
    contact_column = _first_role(fields, CONTACT_ROLES)
    if not contact_column:
        raise MappingError("Mapping has no contact column (role 'contact' or 'email')", field="fields.contact")
    columns: list[str] = []
    seen: set[str] = set()
    for column in fields.values():
        if not isinstance(column, str) or not column.strip():
            continue
        column = column.strip()
        if column.lower() in seen:
            continue
        seen.add(column.lower())
        columns.append(column)
    return SelectSpec(
        resource=resource.strip(),
        columns=tuple(columns),
        pk_column=pk_column,
        contact_column=contact_column,
    )


def row_value(row: dict, column: str) -> Any:
    if column in row:
        return row[column]
    wanted = column.lower()
    for key, value in row.items():
        if str(key).lower() == wanted:
            return value
    return MISSING


def resolve_contact(row: dict, fields: dict) -> Optional[str]:
    column = _first_role(fields, CONTACT_ROLES)
    candidates = [column] if column else []
    candidates.extend(ROW_CONTACT_FALLBACKS)
    for candidate in candidates:
        value = row_value(row, candidate)
        if value is MISSING or value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def resolve_entity_pk(row: dict, fields: dict) -> Optional[str]:
    column = _first_role(fields, PK_ROLES)
    if not column:
        return None
    value = row_value(row, column)
    if value is MISSING or value is None:
        return None
    return str(value)


def is_stale(validated_at: Optional[datetime], now: datetime, max_age_days: int = STALE_AFTER_DAYS) -> bool:
    if validated_at is None:
        return True
    if validated_at.tzinfo is None:
        validated_at = validated_at.replace(tzinfo=timezone.utc)
    return now - validated_at > timedelta(days=max_age_days)


def validate_mapping_fields(fields: Any) -> list[dict]:
    issues: list[dict] = []
    if not isinstance(fields, dict) or not fields:
        return [{"field": "fields", "code": "INVALID_FIELDS", "message": "fields must be a non-empty object"}]
    for role, column in fields.items():
        if not isinstance(column, str) or not column.strip():
            issues.append(
                {"field": f"fields.{role}", "code": "INVALID_COLUMN", "message": "Column name must be a non-empty string"}
            )
    if not _first_role(fields, PK_ROLES):
        issues.append({"field": "fields.pk", "code": "MISSING_PK", "message": "Mapping requires a 'pk' role"})
    if not _first_role(fields, CONTACT_ROLES):
        issues.append(
            {"field": "fields.contact", "code": "MISSING_CONTACT", "message": "Mapping requires a 'contact' or 'email' role"}
        )
    return issues
