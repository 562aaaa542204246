"""
API endpoints for follow-up rules, including manual and dry runs.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...core.errors import FollowupError
from ...core.pagination import DEFAULT_PAGE_SIZE, paginate
from ...models.followup_rule import FollowupRule
from ...schemas.followup_rule import RuleCreate, RuleOut, RuleUpdate
from ...services.followup_store import delivery_counts
from ...services.rule_runner import RuleRunner, get_rule_runner
from ...services.rule_validation import validate_rule
from .scoping import bad_request, get_mapping_for_user, get_rule_for_user, http_error, issue, scoped


router = APIRouter(prefix="/api/v1/rules", tags=["rules"])
logger = logging.getLogger("rules_api")


def _serialize(rule: FollowupRule) -> dict:
    return RuleOut.model_validate(rule).model_dump()


def _rule_summary(rule: FollowupRule) -> dict:
    mapping = rule.mapping
    connection = mapping.connection if mapping else None
    return {
        "id": rule.id,
        "name": rule.name,
        "mapping": {
            "id": mapping.id if mapping else None,
            "resource": mapping.resource if mapping else None,
            "connection": {
                "id": connection.id,
                "name": connection.name,
                "type": connection.type,
            }
            if connection
            else None,
        },
    }


@router.post("", status_code=201)
def create_rule(
    payload: RuleCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    mapping = get_mapping_for_user(db, payload.mapping_id, user)
    issues = validate_rule(
        condition=payload.condition,
        action=payload.action,
        fields=dict(mapping.fields or {}),
        schedule_cron=payload.schedule_cron,
    )
    if issues:
        raise bad_request(issues)
    rule = FollowupRule(
        tenant_id=mapping.tenant_id,
        mapping_id=mapping.id,
        name=payload.name,
        active=payload.active,
        schedule_cron=payload.schedule_cron,
        condition=payload.condition,
        action=payload.action,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info("Rule created id=%s tenant=%s mapping=%s", rule.id, rule.tenant_id, mapping.id)
    return {"ok": True, "rule": _serialize(rule)}


@router.get("")
def list_rules(
    response: Response,
    active: bool | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    query = scoped(db.query(FollowupRule), FollowupRule, user)
    if active is not None:
        query = query.filter(FollowupRule.active.is_(active))
    query = query.order_by(FollowupRule.created_at.desc())
    result = paginate(query, page=page, page_size=page_size, serialize=_serialize, response=response)
    counts = delivery_counts(db, [item["id"] for item in result["items"]])
    for item in result["items"]:
        item["deliveries"] = counts.get(item["id"], {})
    return result


@router.get("/{rule_id}")
def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    return _serialize(get_rule_for_user(db, rule_id, user))


@router.put("/{rule_id}")
def update_rule(
    rule_id: str,
    payload: RuleUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    rule = get_rule_for_user(db, rule_id, user)
    data = payload.model_dump(exclude_unset=True)
    issues = validate_rule(
        condition=data.get("condition", rule.condition),
        action=data.get("action", rule.action),
        fields=dict(rule.mapping.fields or {}),
        schedule_cron=data.get("schedule_cron", rule.schedule_cron),
    )
    if issues:
        raise bad_request(issues)
    for key, value in data.items():
        setattr(rule, key, value)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return {"ok": True, "rule": _serialize(rule)}


@router.delete("/{rule_id}")
def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    rule = get_rule_for_user(db, rule_id, user)
    db.delete(rule)
    db.commit()
    return {"ok": True, "id": rule_id}


@router.get("/{rule_id}/dry-run")
def dry_run_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    runner: RuleRunner = Depends(get_rule_runner),
) -> dict:
    # Previews are read-only, so inactive rules may be previewed while being authored.
    rule = get_rule_for_user(db, rule_id, user)
    summary = _rule_summary(rule)
    try:
        result = runner.run_rule(rule.id, dry_run=True)
    except FollowupError as exc:
        raise http_error(exc)
    return {"ok": True, "rule": summary, "dryRun": result.as_dict()}


@router.post("/{rule_id}/run")
def run_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    runner: RuleRunner = Depends(get_rule_runner),
) -> dict:
    rule = get_rule_for_user(db, rule_id, user)
    if not rule.active:
        raise HTTPException(
            status_code=400,
            detail=issue("active", "RULE_INACTIVE", "Rule is inactive; activate it or use dry-run"),
        )
    summary = _rule_summary(rule)
    try:
        result = runner.run_rule(rule.id)
    except FollowupError as exc:
        raise http_error(exc)
    logger.info("Manual rule run id=%s by=%s result=%s", rule.id, user.username or user.user_id, result.as_dict())
    return {"ok": True, "rule": summary, "execution": result.as_dict()}
