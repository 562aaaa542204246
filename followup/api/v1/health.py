"""
Health endpoint: ledger database reachability and scheduler state.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from ...core.db import get_db
from ...services.followup_scheduler import FollowupScheduler, get_followup_scheduler


router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("")
def health(
    db: Session = Depends(get_db),
    scheduler: FollowupScheduler = Depends(get_followup_scheduler),
) -> dict:
    database = {"ok": True, "error": None}
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        database = {"ok": False, "error": str(exc)}
    return {
        "ok": database["ok"],
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "database": database,
        "scheduler": scheduler.get_status(),
    }
