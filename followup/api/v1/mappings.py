"""
API endpoints for field mappings.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...core.errors import FollowupError
from ...core.pagination import DEFAULT_PAGE_SIZE, paginate
from ...models.mapping import FieldMapping
from ...schemas.mapping import MappingCreate, MappingOut, MappingUpdate
from ...services.connection_registry import ConnectionRegistry, get_connection_registry
from ...services.mappings import PK_ROLES, build_select, resolve_condition_field, resolve_pk_column, validate_mapping_fields
from .scoping import bad_request, get_connection_for_user, get_mapping_for_user, http_error, not_found, scoped


router = APIRouter(prefix="/api/v1/mappings", tags=["mappings"])

MAX_RECORD_KEY_LENGTH = 200


def _serialize(mapping: FieldMapping) -> dict:
    return MappingOut.model_validate(mapping).model_dump()


@router.post("", status_code=201)
def create_mapping(
    payload: MappingCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    connection = get_connection_for_user(db, payload.connection_id, user)
    issues = validate_mapping_fields(payload.fields)
    if issues:
        raise bad_request(issues)
    mapping = FieldMapping(
        tenant_id=connection.tenant_id,
        connection_id=connection.id,
        resource=payload.resource.strip(),
        fields=dict(payload.fields),
    )
    db.add(mapping)
    db.commit()
    db.refresh(mapping)
    return {"ok": True, "mapping": _serialize(mapping)}


@router.get("")
def list_mappings(
    response: Response,
    connection_id: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    query = scoped(db.query(FieldMapping), FieldMapping, user)
    if connection_id:
        query = query.filter(FieldMapping.connection_id == connection_id)
    query = query.order_by(FieldMapping.created_at.desc())
    return paginate(query, page=page, page_size=page_size, serialize=_serialize, response=response)


@router.get("/{mapping_id}")
def get_mapping(
    mapping_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    return _serialize(get_mapping_for_user(db, mapping_id, user))


@router.put("/{mapping_id}")
def update_mapping(
    mapping_id: str,
    payload: MappingUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    mapping = get_mapping_for_user(db, mapping_id, user)
    if payload.fields is not None:
        issues = validate_mapping_fields(payload.fields)
        if issues:
            raise bad_request(issues)
        mapping.fields = dict(payload.fields)
        mapping.validated_at = None
    if payload.resource is not None:
        mapping.resource = payload.resource.strip()
        mapping.validated_at = None
    db.add(mapping)
    db.commit()
    db.refresh(mapping)
    return {"ok": True, "mapping": _serialize(mapping)}


@router.post("/{mapping_id}/validate")
def validate_mapping(
    mapping_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    """Read one row through the mapping to prove every column exists."""
    mapping = get_mapping_for_user(db, mapping_id, user)
    try:
        spec = build_select(mapping.resource, dict(mapping.fields or {}))
        rows = registry.get_read_only_client(mapping.connection).fetch_rows(spec.resource, spec.columns, 1)
    except FollowupError as exc:
        raise http_error(exc)
    mapping.validated_at = datetime.now(timezone.utc)
    db.add(mapping)
    db.commit()
    db.refresh(mapping)
    return {"ok": True, "mapping": _serialize(mapping), "columns": list(spec.columns), "sampleRows": len(rows)}


@router.get("/{mapping_id}/records/{value}")
def get_record(
    mapping_id: str,
    value: str,
    field: str = Query("pk"),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    """Look up one tenant record through the mapping, by primary key or another mapped field."""
    mapping = get_mapping_for_user(db, mapping_id, user)
    key = value.strip()[:MAX_RECORD_KEY_LENGTH]
    if not key:
        raise bad_request([{"field": "value", "code": "REQUIRED", "message": "Record key is empty"}])
    fields = dict(mapping.fields or {})
    try:
        if field.strip().lower() in PK_ROLES:
            column = resolve_pk_column(fields)
        else:
            column = resolve_condition_field(fields, field)
        record = registry.get_read_only_client(mapping.connection).fetch_record(mapping.resource, column, key)
    except FollowupError as exc:
        raise http_error(exc)
    if record is None:
        raise not_found("RECORD_NOT_FOUND", f"No record in {mapping.resource} where {column} = {key!r}")
    return {"ok": True, "field": column, "record": record}


@router.delete("/{mapping_id}")
def delete_mapping(
    mapping_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    mapping = get_mapping_for_user(db, mapping_id, user)
    db.delete(mapping)
    db.commit()
    return {"ok": True, "id": mapping_id}
