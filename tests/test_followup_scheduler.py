import logging
import threading

import pytest

from followup.core.errors import CronExpressionError
from followup.services import followup_scheduler
from followup.services.followup_scheduler import (
    DEFAULT_INTERVAL_SEC,
    FollowupScheduler,
    parse_cron_interval,
)


@pytest.mark.parametrize(
    "expression, seconds",
    [
        ("0 */3 * * *", 3 * 3600),
        ("15 */6 * * *", 6 * 3600),
        ("0 * * * *", 3600),
        ("*/15 * * * *", 900),
        ("* * * * *", 60),
    ],
)
def test_parse_cron_interval(expression, seconds):
    assert parse_cron_interval(expression) == seconds


@pytest.mark.parametrize("expression", ["", "0 3 * * *", "0 */3 * * 1", "*/0 * * * *", "every hour", "61 * * * *"])
def test_parse_cron_interval_rejects_unsupported(expression):
    with pytest.raises(CronExpressionError):
        parse_cron_interval(expression)


def test_initialize_twice_starts_one_loop():
    calls = []
    scheduler = FollowupScheduler(lambda: calls.append(1), enabled=True, cron_expression="0 */3 * * *")
    try:
        scheduler.initialize()
        first_thread = scheduler._thread
        scheduler.initialize()
        assert scheduler._thread is first_thread
        assert scheduler.is_running()
        status = scheduler.get_status()
        assert status["isInitialized"] is True
        assert status["intervalMs"] == 3 * 3600 * 1000
        assert calls == []
    finally:
        scheduler.stop()
    assert not scheduler.is_running()


def test_disabled_scheduler_does_not_start():
    scheduler = FollowupScheduler(lambda: None, enabled=False)
    scheduler.initialize()
    status = scheduler.get_status()
    assert status["isInitialized"] is True
    assert status["isEnabled"] is False
    assert status["isRunning"] is False


def test_enablement_follows_env(monkeypatch):
    scheduler = FollowupScheduler(lambda: None)
    monkeypatch.setenv("ENABLE_FOLLOWUP_CRON", "false")
    assert scheduler.is_enabled() is False
    monkeypatch.setenv("ENABLE_FOLLOWUP_CRON", "true")
    assert scheduler.is_enabled() is True


def test_invalid_cron_falls_back_to_default_interval(caplog):
    caplog.set_level(logging.ERROR)
    scheduler = FollowupScheduler(lambda: None, enabled=True, cron_expression="0 3 * * MON")
    try:
        scheduler.start()
        status = scheduler.get_status()
        assert status["intervalMs"] == DEFAULT_INTERVAL_SEC * 1000
        assert status["configError"]
    finally:
        scheduler.stop()
    assert any("Invalid FOLLOWUP_CRON_EXPRESSION" in rec.getMessage() for rec in caplog.records)


def test_tick_records_summary():
    scheduler = FollowupScheduler(lambda: {"ran": 2, "ruleIds": ["a", "b"], "results": []}, enabled=False)

    summary = scheduler.manual_trigger()

    assert summary["ran"] == 2
    status = scheduler.get_status()
    assert status["tickCount"] == 1
    assert status["lastRunSummary"]["ran"] == 2
    assert status["lastError"] is None
    assert status["isExecuting"] is False
    assert status["lastRunFinishedAt"] is not None


def test_tick_survives_execution_error(caplog):
    def _boom():
        raise RuntimeError("ledger offline")

    caplog.set_level(logging.ERROR)
    scheduler = FollowupScheduler(_boom, enabled=False)

    assert scheduler.tick() is None
    assert scheduler.get_status()["lastError"] == "ledger offline"
    assert scheduler.get_status()["isExecuting"] is False
    assert any("Follow-up tick failed" in rec.getMessage() for rec in caplog.records)


def test_start_is_noop_when_disabled():
    scheduler = FollowupScheduler(lambda: None, enabled=False)

    scheduler.start()

    assert scheduler.get_status()["isRunning"] is False
    assert scheduler._thread is None


def test_restart_during_slow_tick_keeps_one_loop(monkeypatch):
    monkeypatch.setattr(followup_scheduler, "parse_cron_interval", lambda expression: 0.05)
    entered = threading.Event()
    release = threading.Event()

    def _slow_execute():
        entered.set()
        release.wait(5)
        return {"ran": 0, "ruleIds": [], "results": []}

    scheduler = FollowupScheduler(_slow_execute, enabled=True)
    try:
        scheduler.start()
        assert entered.wait(2)
        old_loop = scheduler._thread

        scheduler.stop(timeout=0.1)
        assert old_loop.is_alive()
        scheduler.start()
        new_loop = scheduler._thread
        assert new_loop is not old_loop

        release.set()
        old_loop.join(timeout=2)
        assert not old_loop.is_alive()
        assert new_loop.is_alive()
    finally:
        release.set()
        scheduler.stop()
