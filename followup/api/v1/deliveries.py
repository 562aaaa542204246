"""
Read-only listing of the delivery ledger.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...core.pagination import DEFAULT_PAGE_SIZE, paginate
from ...models.delivery import Delivery, STATUS_FAILED, STATUS_PENDING, STATUS_SENT
from ...models.followup_rule import FollowupRule
from ...schemas.followup_rule import DeliveryOut
from ...services.delivery_ledger import list_deliveries
from .scoping import bad_request, issue, scoped


router = APIRouter(prefix="/api/v1/deliveries", tags=["deliveries"])

STATUSES = {STATUS_PENDING, STATUS_SENT, STATUS_FAILED}


def _serialize(delivery: Delivery) -> dict:
    return DeliveryOut.model_validate(delivery).model_dump()


@router.get("")
def get_deliveries(
    response: Response,
    rule_id: str | None = Query(None),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    if status and status.lower() not in STATUSES:
        raise bad_request([issue("status", "INVALID_STATUS", f"status must be one of {sorted(STATUSES)}")])
    rule_ids = None
    if not user.is_admin:
        rule_ids = [row[0] for row in scoped(db.query(FollowupRule.id), FollowupRule, user).all()]
    query = list_deliveries(db, rule_ids=rule_ids, rule_id=rule_id, status=status)
    return paginate(query, page=page, page_size=page_size, serialize=_serialize, response=response)
