"""
Rule execution: fetch candidate rows, evaluate, dispatch, record.

One run moves through FETCHING -> EVALUATING -> DISPATCHING -> RECORDING
-> DONE, or ERRORED from any of them. Rows are handled one at a time; a
delivery slot is claimed in the ledger before the channel is called, so a
crash between send and finalize leaves a pending row that blocks resends
for the rest of the day rather than risking a duplicate contact.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import settings, env_float, env_int
from ..core.db import SessionLocal
from ..core.errors import (
    ConfigurationError,
    DuplicateDeliveryError,
    TemplateRenderError,
    TransientError,
    log_exception,
)
from ..models.connection import DbConnection
from . import delivery_ledger
from .channels import ChannelSender, build_channel_sender
from .conditions import ConditionNode, evaluate, parse_condition, validate_condition
from .connection_registry import ConnectionRegistry, get_connection_registry
from .followup_store import create_delivery, find_active_rules, get_rule_with_mapping_and_connection
from .mappings import SelectSpec, build_select, is_stale, resolve_contact, resolve_entity_pk
from .templates import check_action_templates, render_action


logger = logging.getLogger("rule_runner")


class RunState(str, Enum):
    FETCHING = "fetching"
    EVALUATING = "evaluating"
    DISPATCHING = "dispatching"
    RECORDING = "recording"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class RuleRunResult:
    matched: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "matched": self.matched,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class DryRunResult:
    matched: int = 0
    would_send: int = 0
    skipped: int = 0
    samples: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "dryRun": True,
            "matched": self.matched,
            "wouldSend": self.would_send,
            "skipped": self.skipped,
            "samples": list(self.samples),
            "errors": list(self.errors),
        }


@dataclass
class BatchResult:
    ran: int = 0
    rule_ids: list[str] = field(default_factory=list)
    results: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"ran": self.ran, "ruleIds": list(self.rule_ids), "results": list(self.results)}


@dataclass
class _RulePlan:
    rule_id: str
    name: str
    active: bool
    fields: dict
    action: dict
    condition: ConditionNode
    select: SelectSpec
    connection: DbConnection
    validated_at: Optional[datetime]


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, ConfigurationError):
        return "configuration"
    if isinstance(exc, TransientError):
        return "transient"
    return "internal"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: ConnectionRegistry,
        sender: ChannelSender,
        *,
        rule_delay_sec: Optional[float] = None,
        send_delay_sec: Optional[float] = None,
        fetch_limit: Optional[int] = None,
        sample_limit: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._sender = sender
        self.rule_delay_sec = (
            rule_delay_sec
            if rule_delay_sec is not None
            else env_float("FOLLOWUP_RULE_DELAY_SEC", settings.followup_rule_delay_sec)
        )
        self.send_delay_sec = (
            send_delay_sec
            if send_delay_sec is not None
            else env_float("FOLLOWUP_SEND_DELAY_SEC", settings.followup_send_delay_sec)
        )
        self.fetch_limit = fetch_limit or env_int("FOLLOWUP_FETCH_LIMIT", settings.followup_fetch_limit)
        self.sample_limit = sample_limit or env_int("FOLLOWUP_SAMPLE_LIMIT", settings.followup_sample_limit)
        self._clock = clock
        self._sleep = sleep

    def _load_plan(self, db: Session, rule_id: str) -> _RulePlan:
        rule = get_rule_with_mapping_and_connection(db, rule_id)
        mapping = rule.mapping
        fields = dict(mapping.fields or {})
        condition = parse_condition(rule.condition)
        issues = validate_condition(condition, fields)
        if issues:
            raise ConfigurationError(issues[0]["message"], field=issues[0]["field"], code=issues[0]["code"])
        action = dict(rule.action or {})
        check_action_templates(action)
        return _RulePlan(
            rule_id=rule.id,
            name=rule.name,
            active=bool(rule.active),
            fields=fields,
            action=action,
            condition=condition,
            select=build_select(mapping.resource, fields),
            connection=mapping.connection,
            validated_at=mapping.validated_at,
        )

    def _transition(self, plan_id: str, state: RunState) -> RunState:
        logger.debug("Rule run state rule_id=%s state=%s", plan_id, state.value)
        return state

    def run_rule(self, rule_id: str, dry_run: bool = False, *, require_active: bool = False):
        """Run one rule. Returns ``DryRunResult`` when ``dry_run`` else ``RuleRunResult``.

        Configuration and connection problems raise; per-row send failures are
        counted in the result instead.
        """
        now = self._clock()
        state = self._transition(rule_id, RunState.FETCHING)
        db = self._session_factory()
        try:
            plan = self._load_plan(db, rule_id)
            if require_active and not plan.active:
                logger.info("Skipping inactive rule rule_id=%s", rule_id)
                return DryRunResult() if dry_run else RuleRunResult()
            if is_stale(plan.validated_at, now):
                logger.warning(
                    "Mapping validation is stale rule_id=%s resource=%s validated_at=%s",
                    rule_id,
                    plan.select.resource,
                    plan.validated_at,
                )
            client = self._registry.get_read_only_client(plan.connection)
            rows = client.fetch_rows(plan.select.resource, plan.select.columns, self.fetch_limit)

            state = self._transition(rule_id, RunState.EVALUATING)
            matches = [row for row in rows if evaluate(plan.condition, row, plan.fields, now=now)]
            logger.info(
                "Rule evaluated rule_id=%s name=%s fetched=%s matched=%s dry_run=%s",
                rule_id,
                plan.name,
                len(rows),
                len(matches),
                dry_run,
            )
            if dry_run:
                result = self._preview(db, plan, matches, now)
                state = self._transition(rule_id, RunState.DONE)
                return result

            result = RuleRunResult(matched=len(matches))
            for index, row in enumerate(matches):
                if index and self.send_delay_sec > 0:
                    self._sleep(self.send_delay_sec)
                state = self._transition(rule_id, RunState.DISPATCHING)
                self._dispatch_row(db, plan, row, now, result)
            state = self._transition(rule_id, RunState.DONE)
            logger.info(
                "Rule run finished rule_id=%s matched=%s sent=%s failed=%s skipped=%s",
                rule_id,
                result.matched,
                result.sent,
                result.failed,
                result.skipped,
            )
            return result
        except Exception as exc:
            logger.warning(
                "Rule run errored rule_id=%s state=%s err=%s",
                rule_id,
                state.value,
                exc,
            )
            self._transition(rule_id, RunState.ERRORED)
            raise
        finally:
            db.close()

    def _preview(self, db: Session, plan: _RulePlan, matches: list[dict], now: datetime) -> DryRunResult:
        result = DryRunResult(matched=len(matches))
        bucket = delivery_ledger.time_bucket(now)
        for row in matches:
            contact = resolve_contact(row, plan.fields)
            duplicate = False
            if contact:
                key = delivery_ledger.compute_dedupe_key(plan.rule_id, contact, bucket)
                duplicate = delivery_ledger.is_duplicate(db, key)
                if duplicate:
                    result.skipped += 1
                else:
                    result.would_send += 1
            else:
                result.errors.append(f"Row {resolve_entity_pk(row, plan.fields)}: no contact value")
            if len(result.samples) >= self.sample_limit:
                continue
            sample: dict[str, Any] = {"row": row, "contact": contact, "alreadySent": duplicate}
            try:
                message = render_action(plan.action, row)
                sample["subject"] = message.subject
                sample["message"] = message.body
            except TemplateRenderError as exc:
                sample["error"] = exc.message
                result.errors.append(exc.message)
            result.samples.append(sample)
        return result

    def _dispatch_row(self, db: Session, plan: _RulePlan, row: dict, now: datetime, result: RuleRunResult) -> None:
        entity_pk = resolve_entity_pk(row, plan.fields)
        channel = str(plan.action.get("channel") or "email").lower()
        contact = resolve_contact(row, plan.fields)
        if not contact:
            result.failed += 1
            result.errors.append(f"Row {entity_pk}: no contact value")
            return
        key = delivery_ledger.compute_dedupe_key(plan.rule_id, contact, delivery_ledger.time_bucket(now))
        if delivery_ledger.is_duplicate(db, key):
            result.skipped += 1
            return
        try:
            message = render_action(plan.action, row)
        except TemplateRenderError as exc:
            # Render failures stay out of the ledger; the row is retried next tick.
            logger.warning("Template render failed rule_id=%s entity_pk=%s err=%s", plan.rule_id, entity_pk, exc.message)
            result.failed += 1
            result.errors.append(f"Row {entity_pk}: {exc.message}")
            return
        try:
            delivery = create_delivery(
                db,
                rule_id=plan.rule_id,
                contact=contact,
                channel=channel,
                dedupe_key=key,
                entity_pk=entity_pk,
                subject=message.subject,
            )
        except DuplicateDeliveryError:
            result.skipped += 1
            return
        outcome = self._sender.send(
            channel,
            contact,
            message.subject,
            message.body,
            sender=plan.action.get("senderEmail"),
        )
        self._transition(plan.rule_id, RunState.RECORDING)
        delivery_ledger.finalize(db, delivery, outcome, now=self._clock())
        if outcome.success:
            result.sent += 1
        else:
            result.failed += 1
            result.errors.append(f"Row {entity_pk}: {outcome.error}")

    def execute_all_active_rules(self, tenant_id: Optional[str] = None) -> BatchResult:
        db = self._session_factory()
        try:
            rules = [(rule.id, rule.name) for rule in find_active_rules(db, tenant_id)]
        finally:
            db.close()
        batch = BatchResult(ran=len(rules), rule_ids=[rule_id for rule_id, _ in rules])
        for index, (rule_id, name) in enumerate(rules):
            if index and self.rule_delay_sec > 0:
                self._sleep(self.rule_delay_sec)
            try:
                outcome = self.run_rule(rule_id, require_active=True)
            except Exception as exc:
                log_exception(
                    logger,
                    "Rule execution failed",
                    extra={"rule_id": rule_id, "name": name, "kind": _error_kind(exc)},
                    exc=exc,
                    level=logging.WARNING if isinstance(exc, (ConfigurationError, TransientError)) else logging.ERROR,
                )
                batch.results.append(
                    {
                        "ruleId": rule_id,
                        "name": name,
                        "status": "failed",
                        "matched": 0,
                        "sent": 0,
                        "failed": 1,
                        "skipped": 0,
                        "error": str(exc),
                        "errorKind": _error_kind(exc),
                    }
                )
                continue
            batch.results.append({"ruleId": rule_id, "name": name, "status": "ok", **outcome.as_dict()})
        logger.info(
            "Batch finished tenant=%s ran=%s failed_rules=%s",
            tenant_id or "*",
            batch.ran,
            sum(1 for item in batch.results if item["status"] == "failed"),
        )
        return batch


_runner: Optional[RuleRunner] = None
_runner_lock = threading.Lock()


def get_rule_runner() -> RuleRunner:
    """Process-wide runner wired to the ledger session factory and real channels."""
    global _runner
    with _runner_lock:
        if _runner is None:
            _runner = RuleRunner(SessionLocal, get_connection_registry(), build_channel_sender())
        return _runner


def set_rule_runner(runner: Optional[RuleRunner]) -> None:
    global _runner
    with _runner_lock:
        _runner = runner
