"""
API endpoints for tenant database connections.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.crypto import encrypt_secret
from ...core.db import get_db
from ...core.errors import ConfigurationError, FollowupError
from ...core.pagination import DEFAULT_PAGE_SIZE, paginate
from ...models.connection import DbConnection
from ...schemas.connection import ConnectionCreate, ConnectionOut, ConnectionUpdate
from ...services.connection_registry import ConnectionRegistry, get_connection_registry, resolve_sqlite_path
from .scoping import get_connection_for_user, http_error, resolve_tenant, scoped


router = APIRouter(prefix="/api/v1/connections", tags=["connections"])
logger = logging.getLogger("connections_api")


def _serialize(connection: DbConnection) -> dict:
    return ConnectionOut.model_validate(connection).model_dump()


def _check_target(db_type: str, database: str, tenant_id: str) -> None:
    if (db_type or "").upper() != "SQLITE":
        return
    try:
        resolve_sqlite_path(database, tenant_id)
    except ConfigurationError as exc:
        logger.warning("Rejected SQLite path tenant=%s code=%s", tenant_id, exc.code)
        raise http_error(exc)


def _apply_test(connection: DbConnection, registry: ConnectionRegistry) -> dict:
    result = registry.test_connection(connection)
    connection.status = "ACTIVE" if result.success else "ERROR"
    connection.last_error = result.error
    connection.last_tested_at = datetime.now(timezone.utc)
    return result.as_dict()


@router.post("", status_code=201)
def create_connection(
    payload: ConnectionCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    tenant_id = resolve_tenant(user, payload.tenant_id)
    _check_target(payload.type, payload.database, tenant_id)
    result = registry.test_connection_plain(
        db_type=payload.type,
        database=payload.database,
        host=payload.host,
        port=payload.port,
        username=payload.username,
        password=payload.password,
        tenant_id=tenant_id,
    )
    connection = DbConnection(
        tenant_id=tenant_id,
        name=payload.name,
        type=payload.type,
        host=payload.host,
        port=payload.port,
        database=payload.database,
        username=payload.username,
        password_encrypted=encrypt_secret(payload.password) if payload.password else None,
        status="ACTIVE" if result.success else "ERROR",
        last_error=result.error,
        last_tested_at=datetime.now(timezone.utc),
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    logger.info(
        "Connection created id=%s tenant=%s type=%s status=%s",
        connection.id,
        tenant_id,
        connection.type,
        connection.status,
    )
    return {"ok": True, "connection": _serialize(connection), "test": result.as_dict()}


@router.get("")
def list_connections(
    response: Response,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    query = scoped(db.query(DbConnection), DbConnection, user).order_by(DbConnection.created_at.desc())
    return paginate(query, page=page, page_size=page_size, serialize=_serialize, response=response)


@router.get("/{connection_id}")
def get_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    return _serialize(get_connection_for_user(db, connection_id, user))


@router.put("/{connection_id}")
def update_connection(
    connection_id: str,
    payload: ConnectionUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    connection = get_connection_for_user(db, connection_id, user)
    data = payload.model_dump(exclude_unset=True)
    password = data.pop("password", None)
    for key, value in data.items():
        setattr(connection, key, value)
    _check_target(connection.type, connection.database, connection.tenant_id)
    if password is not None:
        connection.password_encrypted = encrypt_secret(password) if password else None
    registry.dispose(connection.id)
    test = _apply_test(connection, registry)
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return {"ok": True, "connection": _serialize(connection), "test": test}


@router.post("/{connection_id}/test")
def test_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    connection = get_connection_for_user(db, connection_id, user)
    test = _apply_test(connection, registry)
    db.add(connection)
    db.commit()
    return {"ok": test["success"], "test": test, "status": connection.status}


@router.delete("/{connection_id}")
def delete_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    connection = get_connection_for_user(db, connection_id, user)
    registry.dispose(connection.id)
    db.delete(connection)
    db.commit()
    return {"ok": True, "id": connection_id}


@router.get("/{connection_id}/tables")
def list_tables(
    connection_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    connection = get_connection_for_user(db, connection_id, user)
    try:
        tables = registry.get_read_only_client(connection).list_tables()
    except FollowupError as exc:
        raise http_error(exc)
    return {"ok": True, "tables": tables}


@router.get("/{connection_id}/tables/{table_name}/columns")
def list_columns(
    connection_id: str,
    table_name: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> dict:
    connection = get_connection_for_user(db, connection_id, user)
    try:
        columns = registry.get_read_only_client(connection).list_columns(table_name)
    except FollowupError as exc:
        raise http_error(exc)
    return {"ok": True, "table": table_name, "columns": columns}
