"""
Delivery deduplication and the idempotency ledger.

A delivery slot is claimed by inserting a ``pending`` row before anything
is sent. The partial unique index on ``dedupe_key`` lets exactly one
pending-or-sent row exist per (rule, contact, day), so concurrent runners
race on the insert and the loser sees ``DuplicateDeliveryError``.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import DuplicateDeliveryError
from ..models.delivery import Delivery, STATUS_FAILED, STATUS_PENDING, STATUS_SENT


logger = logging.getLogger("delivery_ledger")

MAX_ERROR_CHARS = 500


@dataclass
class SendOutcome:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


def time_bucket(now: datetime) -> str:
    """UTC calendar day used as the dedupe window."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).date().isoformat()


def compute_dedupe_key(rule_id: str, contact: str, bucket: str) -> str:
    return f"{rule_id}:{contact.strip().lower()}:{bucket}"


def compute_idempotency_key(dedupe_key: str) -> str:
    return hashlib.sha256(dedupe_key.encode("utf-8")).hexdigest()


def is_duplicate(db: Session, dedupe_key: str) -> bool:
    """Fast-path check; the unique index remains the real guard."""
    row = (
        db.query(Delivery.id)
        .filter(Delivery.dedupe_key == dedupe_key, Delivery.status != STATUS_FAILED)
        .first()
    )
    return row is not None


def record(
    db: Session,
    *,
    rule_id: str,
    contact: str,
    channel: str,
    dedupe_key: str,
    entity_pk: Optional[str] = None,
    subject: Optional[str] = None,
    status: str = STATUS_PENDING,
    error: Optional[str] = None,
) -> Delivery:
    delivery = Delivery(
        rule_id=rule_id,
        contact=contact,
        channel=channel,
        dedupe_key=dedupe_key,
        idempotency_key=compute_idempotency_key(dedupe_key),
        entity_pk=entity_pk,
        subject=subject,
        status=status,
        error=error[:MAX_ERROR_CHARS] if error else None,
    )
    db.add(delivery)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.info("Delivery slot already taken dedupe_key=%s", dedupe_key)
        raise DuplicateDeliveryError(f"Delivery already recorded for {dedupe_key}") from exc
    db.refresh(delivery)
    return delivery


def claim(db: Session, **kwargs) -> Delivery:
    kwargs["status"] = STATUS_PENDING
    return record(db, **kwargs)


def finalize(db: Session, delivery: Delivery, outcome: SendOutcome, *, now: Optional[datetime] = None) -> Delivery:
    if delivery.status != STATUS_PENDING:
        raise ValueError(f"Delivery {delivery.id} already finalized as {delivery.status}")
    now = now or datetime.now(timezone.utc)
    if outcome.success:
        delivery.status = STATUS_SENT
        delivery.sent_at = now
        delivery.provider_message_id = outcome.provider_message_id
        delivery.error = None
    else:
        delivery.status = STATUS_FAILED
        delivery.error = (outcome.error or "send failed")[:MAX_ERROR_CHARS]
    delivery.updated_at = now
    db.add(delivery)
    db.commit()
    return delivery


def list_deliveries(
    db: Session,
    *,
    rule_ids: Optional[list[str]] = None,
    rule_id: Optional[str] = None,
    status: Optional[str] = None,
):
    query = db.query(Delivery)
    if rule_ids is not None:
        if not rule_ids:
            return query.filter(Delivery.id == "__none__")
        query = query.filter(Delivery.rule_id.in_(rule_ids))
    if rule_id:
        query = query.filter(Delivery.rule_id == rule_id)
    if status:
        query = query.filter(Delivery.status == status.lower())
    return query.order_by(Delivery.created_at.desc())
