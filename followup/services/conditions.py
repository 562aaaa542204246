"""
Declarative condition trees evaluated against tenant rows.

Stored JSON looks like::

    {"all": [
        {"equals": {"field": "status", "value": "NoReply"}},
        {"olderThanDays": {"field": "lastEmailSent", "days": 3}}
    ]}

``parse_condition`` turns that into ``Combinator``/``Predicate`` nodes once,
at rule save time and again when a run starts. ``evaluate`` is pure: the
current time is passed in and nothing touches I/O. Ambiguous values (a
missing column, an unparsable date) fail closed and never match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field as dc_field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Union

from ..core.errors import ConditionError, MappingError
from .mappings import MISSING, resolve_condition_field, row_value


COMBINATORS = ("all", "any")
PREDICATE_ARGS: dict[str, tuple[str, ...]] = {
    "equals": ("value",),
    "notEquals": ("value",),
    "in": ("values",),
    "greaterThan": ("value",),
    "lessThan": ("value",),
    "olderThanDays": ("days",),
    "newerThanDays": ("days",),
    "isEmpty": (),
    "isNotEmpty": (),
}
_ISSUE_CODES = {
    "equals": "INVALID_EQUALS",
    "olderThanDays": "INVALID_OLDER_THAN_DAYS",
}
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


@dataclass(frozen=True)
class Combinator:
    op: str
    children: tuple["ConditionNode", ...] = ()


@dataclass(frozen=True)
class Predicate:
    kind: str
    field: str
    args: dict = dc_field(default_factory=dict)


ConditionNode = Union[Combinator, Predicate]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _parse_predicate(kind: str, body: Any, path: str) -> Predicate:
    code = _ISSUE_CODES.get(kind, "INVALID_PREDICATE")
    if not isinstance(body, dict):
        raise ConditionError(f"{kind} operator requires an object", field=path, code=code)
    field = body.get("field")
    if not isinstance(field, str) or not field.strip():
        raise ConditionError(f"{kind} operator requires a field", field=path, code=code)
    args: dict = {}
    for name in PREDICATE_ARGS[kind]:
        if name not in body or body[name] is None:
            raise ConditionError(f"{kind} operator requires field and {name}", field=path, code=code)
        args[name] = body[name]
    if kind in ("olderThanDays", "newerThanDays") and (not _is_number(args["days"]) or args["days"] < 0):
        raise ConditionError(f"{kind} operator requires field and numeric days value", field=path, code=code)
    if kind == "in" and not isinstance(args["values"], list):
        raise ConditionError("in operator requires a list of values", field=path, code=code)
    return Predicate(kind=kind, field=field.strip(), args=args)


def parse_condition(raw: Any, path: str = "condition") -> ConditionNode:
    if not isinstance(raw, dict):
        raise ConditionError("Condition must be a valid JSON object", field=path)
    unknown = [key for key in raw if key not in COMBINATORS and key not in PREDICATE_ARGS]
    if unknown:
        raise ConditionError(
            f"Unknown condition operator(s): {', '.join(sorted(unknown))}",
            field=path,
            code="UNKNOWN_OPERATOR",
        )
    if not raw:
        raise ConditionError(
            "Condition must contain at least one operator (all, any, equals, olderThanDays)",
            field=path,
            code="MISSING_OPERATOR",
        )
    nodes: list[ConditionNode] = []
    for key, body in raw.items():
        if key in COMBINATORS:
            if not isinstance(body, list):
                raise ConditionError(f"'{key}' must be a list of conditions", field=f"{path}.{key}")
            children = tuple(parse_condition(child, f"{path}.{key}[{idx}]") for idx, child in enumerate(body))
            nodes.append(Combinator(op=key, children=children))
        else:
            nodes.append(_parse_predicate(key, body, f"{path}.{key}"))
    if len(nodes) == 1:
        return nodes[0]
    # Several operators on one object are read as a conjunction.
    return Combinator(op="all", children=tuple(nodes))


def iter_predicates(node: ConditionNode):
    if isinstance(node, Predicate):
        yield node
        return
    for child in node.children:
        yield from iter_predicates(child)


def validate_condition(node: ConditionNode, fields: dict) -> list[dict]:
    issues: list[dict] = []
    for predicate in iter_predicates(node):
        try:
            resolve_condition_field(fields, predicate.field)
        except MappingError as exc:
            issues.append({"field": f"condition.{predicate.kind}", "code": "UNRESOLVED_FIELD", "message": exc.message})
    return issues


def collect_issues(raw: Any, fields: dict) -> list[dict]:
    try:
        node = parse_condition(raw)
    except ConditionError as exc:
        return [exc.as_issue()]
    return validate_condition(node, fields)


def _normalize(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    text = str(value).strip()
    if _NUMBER_RE.match(text):
        return float(text)
    if text.lower() in {"true", "false"}:
        return text.lower()
    return text


def values_equal(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None
    return _normalize(actual) == _normalize(expected)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort datetime parsing; ``None`` when the value is not a date."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif _is_number(value):
        seconds = float(value)
        if seconds > 1e11:
            seconds = seconds / 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _compare(actual: Any, expected: Any) -> Optional[int]:
    left, right = _normalize(actual), _normalize(expected)
    if isinstance(left, float) and isinstance(right, float):
        return (left > right) - (left < right)
    left_dt, right_dt = parse_datetime(actual), parse_datetime(expected)
    if left_dt is not None and right_dt is not None:
        return (left_dt > right_dt) - (left_dt < right_dt)
    return None


def _is_empty(value: Any) -> bool:
    return value is MISSING or value is None or (isinstance(value, str) and not value.strip())


def _evaluate_predicate(node: Predicate, row: dict, fields: dict, now: datetime) -> bool:
    column = resolve_condition_field(fields, node.field)
    value = row_value(row, column)
    if node.kind == "isEmpty":
        return _is_empty(value)
    if node.kind == "isNotEmpty":
        return not _is_empty(value)
    if value is MISSING:
        return False
    if node.kind == "equals":
        return values_equal(value, node.args["value"])
    if node.kind == "notEquals":
        return value is not None and not values_equal(value, node.args["value"])
    if node.kind == "in":
        return any(values_equal(value, candidate) for candidate in node.args["values"])
    if node.kind in ("greaterThan", "lessThan"):
        if value is None:
            return False
        order = _compare(value, node.args["value"])
        if order is None:
            return False
        return order > 0 if node.kind == "greaterThan" else order < 0
    if node.kind in ("olderThanDays", "newerThanDays"):
        parsed = parse_datetime(value)
        if parsed is None:
            return False
        cutoff = now - timedelta(days=float(node.args["days"]))
        return parsed < cutoff if node.kind == "olderThanDays" else parsed >= cutoff
    raise ConditionError(f"Unsupported predicate '{node.kind}'", code="UNKNOWN_OPERATOR")


def evaluate(node: ConditionNode, row: dict, fields: dict, *, now: datetime) -> bool:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if isinstance(node, Combinator):
        if node.op == "all":
            return all(evaluate(child, row, fields, now=now) for child in node.children)
        return any(evaluate(child, row, fields, now=now) for child in node.children)
    return _evaluate_predicate(node, row, fields, now)
