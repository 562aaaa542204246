"""
Recurring trigger for follow-up rules.

A single daemon thread waits one interval, runs every active rule, and
waits again. Because ticks run inside that one loop they never overlap;
manual triggers run on the caller's thread and may overlap a tick, which
the delivery ledger makes safe.

Only a small cron subset is understood, enough to express "every N hours"
and "every N minutes":

    "M */N * * *"   every N hours
    "*/N * * * *"   every N minutes
    "M * * * *"     hourly
    "* * * * *"     every minute
"""

from __future__ import annotations

import logging
import os
import re
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..core.config import DEFAULT_CRON_EXPRESSION, env_flag, settings
from ..core.errors import CronExpressionError, log_exception
from .rule_runner import get_rule_runner


logger = logging.getLogger("followup_scheduler")

DEFAULT_INTERVAL_SEC = 3 * 60 * 60

_STEP = re.compile(r"^\*/(\d+)$")
_FIXED = re.compile(r"^\d+$")


def parse_cron_interval(expression: str) -> int:
    """Return the tick interval in seconds for a supported cron expression."""
    parts = (expression or "").split()
    if len(parts) != 5:
        raise CronExpressionError(f"Cron expression must have 5 fields: {expression!r}", field="scheduleCron")
    minute, hour, day, month, weekday = parts
    if (day, month, weekday) != ("*", "*", "*"):
        raise CronExpressionError(
            f"Only minute and hour fields may be set in {expression!r}",
            field="scheduleCron",
        )
    minute_step = _STEP.match(minute)
    hour_step = _STEP.match(hour)
    if _FIXED.match(minute) and int(minute) < 60:
        if hour_step and int(hour_step.group(1)) > 0:
            return int(hour_step.group(1)) * 3600
        if hour == "*":
            return 3600
    if minute_step and int(minute_step.group(1)) > 0 and hour == "*":
        return int(minute_step.group(1)) * 60
    if minute == "*" and hour == "*":
        return 60
    raise CronExpressionError(f"Unsupported cron expression {expression!r}", field="scheduleCron")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class FollowupScheduler:
    def __init__(
        self,
        execute: Callable[[], Any],
        *,
        enabled: Optional[bool] = None,
        cron_expression: Optional[str] = None,
    ) -> None:
        self._execute = execute
        self._enabled_override = enabled
        self.cron_expression = cron_expression or DEFAULT_CRON_EXPRESSION
        self.interval_sec = DEFAULT_INTERVAL_SEC
        self.config_error: Optional[str] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._initialized = False
        self._executing = 0
        self.tick_count = 0
        self.last_run_started_at: Optional[datetime] = None
        self.last_run_finished_at: Optional[datetime] = None
        self.last_run_summary: Optional[dict] = None
        self.last_error: Optional[str] = None

    def is_enabled(self) -> bool:
        if self._enabled_override is not None:
            return self._enabled_override
        return env_flag("ENABLE_FOLLOWUP_CRON")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                logger.debug("Follow-up scheduler already initialized")
                return
            self._initialized = True
        self.start()

    def start(self) -> None:
        if not self.is_enabled():
            logger.info("Follow-up scheduler disabled (ENABLE_FOLLOWUP_CRON is not true)")
            return
        with self._lock:
            if self.is_running():
                return
            try:
                self.interval_sec = parse_cron_interval(self.cron_expression)
                self.config_error = None
            except CronExpressionError as exc:
                self.interval_sec = DEFAULT_INTERVAL_SEC
                self.config_error = exc.message
                logger.error(
                    "Invalid FOLLOWUP_CRON_EXPRESSION=%r (%s); using every %ss",
                    self.cron_expression,
                    exc.message,
                    DEFAULT_INTERVAL_SEC,
                )
            # Each loop owns its stop event; a loop left finishing a tick after
            # stop() still exits instead of resuming beside its replacement.
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="followup-scheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info("Follow-up scheduler started cron=%s interval=%ss", self.cron_expression, self.interval_sec)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            self._stop_event.set()
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Follow-up scheduler loop still finishing a tick after %ss", timeout)
        logger.info("Follow-up scheduler stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_sec):
            self.tick(trigger="schedule")

    def tick(self, trigger: str = "schedule") -> Optional[dict]:
        with self._lock:
            self._executing += 1
            self.tick_count += 1
            self.last_run_started_at = datetime.now(timezone.utc)
        summary: Optional[dict] = None
        try:
            result = self._execute()
            summary = result.as_dict() if hasattr(result, "as_dict") else result
            self.last_error = None
            logger.info(
                "Follow-up tick finished trigger=%s ran=%s",
                trigger,
                (summary or {}).get("ran"),
            )
        except Exception as exc:
            self.last_error = str(exc)
            log_exception(logger, "Follow-up tick failed", extra={"trigger": trigger}, exc=exc)
        finally:
            with self._lock:
                self._executing -= 1
                self.last_run_finished_at = datetime.now(timezone.utc)
                if summary is not None:
                    self.last_run_summary = summary
        return summary

    def manual_trigger(self) -> Optional[dict]:
        return self.tick(trigger="manual")

    def get_status(self) -> dict:
        return {
            "isInitialized": self._initialized,
            "isRunning": self.is_running(),
            "isEnabled": self.is_enabled(),
            "cronExpression": self.cron_expression,
            "intervalMs": self.interval_sec * 1000,
            "isExecuting": self._executing > 0,
            "tickCount": self.tick_count,
            "lastRunStartedAt": _iso(self.last_run_started_at),
            "lastRunFinishedAt": _iso(self.last_run_finished_at),
            "lastRunSummary": self.last_run_summary,
            "lastError": self.last_error,
            "configError": self.config_error,
        }


_scheduler: Optional[FollowupScheduler] = None
_scheduler_lock = threading.Lock()


def _default_execute() -> Any:
    return get_rule_runner().execute_all_active_rules()


def get_followup_scheduler() -> FollowupScheduler:
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = FollowupScheduler(
                _default_execute,
                cron_expression=os.getenv("FOLLOWUP_CRON_EXPRESSION") or settings.followup_cron_expression,
            )
        return _scheduler


def initialize_followup_scheduler() -> FollowupScheduler:
    scheduler = get_followup_scheduler()
    scheduler.initialize()
    return scheduler


def shutdown_followup_scheduler() -> None:
    global _scheduler
    with _scheduler_lock:
        scheduler, _scheduler = _scheduler, None
    if scheduler is not None:
        scheduler.stop()
