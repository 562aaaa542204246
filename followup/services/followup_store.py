"""
Ledger-side queries the rule runner and HTTP layer share.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ..core.errors import RuleNotFoundError
from ..models.delivery import Delivery
from ..models.followup_rule import FollowupRule
from ..models.mapping import FieldMapping
from . import delivery_ledger


def find_active_rules(db: Session, tenant_id: Optional[str] = None) -> list[FollowupRule]:
    query = db.query(FollowupRule).filter(FollowupRule.active.is_(True))
    if tenant_id is not None:
        query = query.filter(FollowupRule.tenant_id == tenant_id)
    return query.order_by(FollowupRule.created_at.asc(), FollowupRule.id.asc()).all()


def get_rule_with_mapping_and_connection(db: Session, rule_id: str) -> FollowupRule:
    rule = (
        db.query(FollowupRule)
        .options(joinedload(FollowupRule.mapping).joinedload(FieldMapping.connection))
        .filter(FollowupRule.id == rule_id)
        .first()
    )
    if not rule:
        raise RuleNotFoundError(f"Rule {rule_id} not found")
    if not rule.mapping:
        raise RuleNotFoundError(f"Mapping not found for rule {rule_id}")
    if not rule.mapping.connection:
        raise RuleNotFoundError(f"Connection not found for mapping {rule.mapping.id}")
    return rule


def create_delivery(db: Session, **data) -> Delivery:
    """Claim a pending delivery; raises ``DuplicateDeliveryError`` when the slot is taken."""
    return delivery_ledger.claim(db, **data)


def delivery_counts(db: Session, rule_ids: list[str]) -> dict[str, dict[str, int]]:
    if not rule_ids:
        return {}
    rows = (
        db.query(Delivery.rule_id, Delivery.status, func.count(Delivery.id))
        .filter(Delivery.rule_id.in_(rule_ids))
        .group_by(Delivery.rule_id, Delivery.status)
        .all()
    )
    counts: dict[str, dict[str, int]] = {}
    for rule_id, status, total in rows:
        counts.setdefault(rule_id, {})[status] = int(total)
    return counts
