"""
Scheduler status and manual all-rules trigger.

A batch in which some rules failed is still a 200: the batch ran, and the
per-rule results say which ones failed and why.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...models.followup_rule import FollowupRule
from ...services.followup_scheduler import FollowupScheduler, get_followup_scheduler
from ...services.rule_runner import RuleRunner, get_rule_runner
from .scoping import scoped


router = APIRouter(prefix="/api/v1/followup", tags=["followup"])
logger = logging.getLogger("followup_api")


@router.get("/cron-run")
def cron_status(
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    scheduler: FollowupScheduler = Depends(get_followup_scheduler),
) -> dict:
    active_rules = scoped(db.query(FollowupRule), FollowupRule, user).filter(FollowupRule.active.is_(True)).count()
    return {"ok": True, "scheduler": scheduler.get_status(), "userActiveRules": active_rules}


@router.post("/cron-run")
def cron_run(
    user: UserContext = Depends(get_current_user),
    scheduler: FollowupScheduler = Depends(get_followup_scheduler),
    runner: RuleRunner = Depends(get_rule_runner),
) -> dict:
    if user.is_admin and not user.tenant_id:
        summary = scheduler.manual_trigger() or {"ran": 0, "ruleIds": [], "results": []}
        scope = "all tenants"
    else:
        summary = runner.execute_all_active_rules(tenant_id=user.tenant_id).as_dict()
        scope = f"tenant {user.tenant_id}"
    failed = sum(1 for item in summary.get("results", []) if item.get("status") == "failed")
    logger.info("Manual follow-up run scope=%s ran=%s failed=%s", scope, summary.get("ran"), failed)
    return {
        "ok": True,
        "message": f"Executed {summary.get('ran', 0)} active rule(s) for {scope}; {failed} failed",
        "summary": summary,
    }
