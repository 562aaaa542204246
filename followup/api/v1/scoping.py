"""
Tenant scoping and error translation shared by the v1 routers.

Rows owned by another tenant are reported as 404, never 403, so callers
cannot discover ids that exist elsewhere.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...core.auth import UserContext
from ...core.errors import ConfigurationError, FollowupError, RuleNotFoundError
from ...models.connection import DbConnection
from ...models.followup_rule import FollowupRule
from ...models.mapping import FieldMapping


def issue(field: str, code: str, message: str) -> dict:
    return {"field": field, "code": code, "message": message}


def not_found(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=404, detail=issue("id", code, message))


def bad_request(issues: list[dict]) -> HTTPException:
    return HTTPException(status_code=400, detail=issues)


def http_error(exc: FollowupError) -> HTTPException:
    if isinstance(exc, RuleNotFoundError):
        return HTTPException(status_code=404, detail=exc.as_issue())
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=exc.as_issue())
    return HTTPException(status_code=500, detail=exc.as_issue())


def resolve_tenant(user: UserContext, requested: Optional[str] = None) -> str:
    if user.is_admin:
        tenant_id = requested or user.tenant_id
        if not tenant_id:
            raise bad_request([issue("tenant_id", "TENANT_REQUIRED", "Admins must name the tenant")])
        return tenant_id
    if requested and requested != user.tenant_id:
        raise HTTPException(status_code=403, detail=issue("tenant_id", "FORBIDDEN", "Cannot act for another tenant"))
    return user.tenant_id or ""


def scoped(query, model, user: UserContext):
    if user.is_admin:
        return query
    return query.filter(model.tenant_id == user.tenant_id)


def get_connection_for_user(db: Session, connection_id: str, user: UserContext) -> DbConnection:
    row = scoped(db.query(DbConnection), DbConnection, user).filter(DbConnection.id == connection_id).first()
    if not row:
        raise not_found("CONNECTION_NOT_FOUND", "Connection not found")
    return row


def get_mapping_for_user(db: Session, mapping_id: str, user: UserContext) -> FieldMapping:
    row = scoped(db.query(FieldMapping), FieldMapping, user).filter(FieldMapping.id == mapping_id).first()
    if not row:
        raise not_found("MAPPING_NOT_FOUND", "Mapping not found")
    return row


def get_rule_for_user(db: Session, rule_id: str, user: UserContext) -> FollowupRule:
    row = scoped(db.query(FollowupRule), FollowupRule, user).filter(FollowupRule.id == rule_id).first()
    if not row:
        raise not_found("RULE_NOT_FOUND", "Rule not found")
    return row
