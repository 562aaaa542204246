"""
Message rendering for follow-up actions.

``messageTemplate`` is a Jinja2 template rendered in a sandbox with the
row's columns as variables (also reachable as ``row['Column Name']``).
``subject`` and ``content`` additionally accept the older ``{column}``
placeholder syntax.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from jinja2 import TemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment

from ..core.errors import TemplateRenderError
from .conditions import parse_datetime


DEFAULT_SUBJECT = "Follow-up"
DEFAULT_CONTENT = "This is a follow-up message."

_LEGACY_PLACEHOLDER = re.compile(r"(?<!\{)\{\s*([A-Za-z_][\w.]*)\s*\}(?!\})")
_DATE_FORMATS = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
}


@dataclass
class RenderedMessage:
    subject: str
    body: str


def _uppercase(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def _lowercase(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _fallback(value: Any, fallback: Any = "") -> Any:
    if value is None or isinstance(value, Undefined) or value == "":
        return fallback
    return value


def _format_date(value: Any, fmt: str = "YYYY-MM-DD") -> str:
    parsed = parse_datetime(value)
    if parsed is None:
        return ""
    return parsed.strftime(_DATE_FORMATS.get(fmt, fmt))


def _truncate_text(value: Any, length: int = 50) -> Any:
    if not isinstance(value, str) or len(value) <= length:
        return value
    return value[:length] + "..."


def _build_environment() -> SandboxedEnvironment:
    env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)
    env.filters.update(
        {
            "uppercase": _uppercase,
            "lowercase": _lowercase,
            "fallback": _fallback,
            "format_date": _format_date,
            "formatDate": _format_date,
            "truncate_text": _truncate_text,
        }
    )
    return env


_env = _build_environment()


def _context(row: dict) -> dict:
    context = {str(key): value for key, value in row.items() if str(key).isidentifier()}
    context["row"] = dict(row)
    return context


def validate_template(template: Optional[str]) -> Optional[str]:
    """Return a syntax error message, or None when the template compiles."""
    if not template:
        return None
    try:
        _env.parse(template)
    except TemplateError as exc:
        return str(exc)
    return None


def render_message_template(template: str, row: dict) -> str:
    try:
        return _env.from_string(template).render(_context(row))
    except (TemplateError, TypeError, ValueError, AttributeError) as exc:
        raise TemplateRenderError(f"Template render failed: {exc}", field="action.messageTemplate") from exc


def render_simple_template(template: str, row: dict) -> str:
    lowered = {str(key).lower(): value for key, value in row.items()}

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in row:
            value = row[name]
        elif name.lower() in lowered:
            value = lowered[name.lower()]
        else:
            return match.group(0)
        return "" if value is None else str(value)

    return _LEGACY_PLACEHOLDER.sub(_replace, template)


def _render_text(template: str, row: dict) -> str:
    if "{{" in template or "{%" in template:
        return render_message_template(template, row)
    return render_simple_template(template, row)


def render_action(action: dict, row: dict) -> RenderedMessage:
    message_template = (action.get("messageTemplate") or "").strip()
    content = action.get("content") or ""
    if message_template:
        body = render_message_template(message_template, row)
    elif content:
        body = _render_text(content, row)
    else:
        body = DEFAULT_CONTENT
    subject_template = action.get("subject") or ""
    subject = _render_text(subject_template, row).strip() if subject_template else ""
    return RenderedMessage(subject=subject or DEFAULT_SUBJECT, body=body)


def check_action_templates(action: dict) -> None:
    """Raise ``TemplateRenderError`` when one of the action's templates does not compile."""
    for key in ("messageTemplate", "subject", "content"):
        value = action.get(key)
        error = validate_template(value) if isinstance(value, str) else None
        if error:
            raise TemplateRenderError(f"Template {key} does not compile: {error}", field=f"action.{key}")
