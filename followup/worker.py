"""
Follow-up scheduler worker process entrypoint.

Runs the recurring trigger outside the HTTP service so exactly one process
owns the schedule:

    python -m followup.worker
"""

from __future__ import annotations

import logging
import os
import signal
import threading

from .core.config import settings
from .services.connection_registry import get_connection_registry
from .services.followup_scheduler import FollowupScheduler
from .services.rule_runner import get_rule_runner

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")


def build_scheduler() -> FollowupScheduler:
    runner = get_rule_runner()
    return FollowupScheduler(
        runner.execute_all_active_rules,
        enabled=True,
        cron_expression=os.getenv("FOLLOWUP_CRON_EXPRESSION") or settings.followup_cron_expression,
    )


def main() -> int:
    logger.info("Worker booted (pid=%s)", os.getpid())
    stop_event = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    scheduler = build_scheduler()
    scheduler.initialize()
    status = scheduler.get_status()
    logger.info(
        "Worker started cron=%s interval=%ss config_error=%s",
        status["cronExpression"],
        status["intervalMs"] // 1000,
        status["configError"],
    )
    try:
        stop_event.wait()
    finally:
        scheduler.stop()
        get_connection_registry().dispose_all()
    logger.info("Worker stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
