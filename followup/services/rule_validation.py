"""
Save-time validation of follow-up rules.

Returns issue lists (``{field, code, message}``) rather than raising, so
the API can report every problem in one response.
"""

from __future__ import annotations

from typing import Any, Optional

from ..core.errors import CronExpressionError
from .channels import CHANNELS
from .conditions import collect_issues
from .followup_scheduler import parse_cron_interval
from .templates import validate_template


def validate_action(action: Any) -> list[dict]:
    if not isinstance(action, dict) or not action:
        return [{"field": "action", "code": "INVALID_ACTION", "message": "Action must be a valid JSON object"}]
    issues: list[dict] = []
    channel = str(action.get("channel") or "").lower()
    if channel not in CHANNELS:
        issues.append(
            {
                "field": "action.channel",
                "code": "INVALID_CHANNEL",
                "message": f"Channel must be one of: {', '.join(CHANNELS)}",
            }
        )
    if channel == "email" and not str(action.get("subject") or "").strip():
        issues.append(
            {"field": "action.subject", "code": "MISSING_EMAIL_SUBJECT", "message": "Email actions require a subject"}
        )
    for key in ("messageTemplate", "subject", "content"):
        value = action.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            issues.append({"field": f"action.{key}", "code": "INVALID_TEMPLATE", "message": f"{key} must be a string"})
            continue
        error = validate_template(value)
        if error:
            issues.append({"field": f"action.{key}", "code": "INVALID_TEMPLATE", "message": error})
    return issues


def validate_schedule(schedule_cron: Optional[str]) -> list[dict]:
    if schedule_cron is None:
        return []
    try:
        parse_cron_interval(schedule_cron)
    except CronExpressionError as exc:
        return [exc.as_issue()]
    return []


def validate_rule(
    *,
    condition: Any,
    action: Any,
    fields: dict,
    schedule_cron: Optional[str] = None,
) -> list[dict]:
    issues = collect_issues(condition, fields)
    issues.extend(validate_action(action))
    issues.extend(validate_schedule(schedule_cron))
    return issues
