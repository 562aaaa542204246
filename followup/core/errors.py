"""
Error types and logging helpers shared by the follow-up engine.

Configuration errors are surfaced to the operator and never retried.
Transient errors are recorded as failed attempts; the next scheduler tick
retries them naturally.
"""

from __future__ import annotations

import logging
from typing import Any, Optional


class FollowupError(Exception):
    code = "FOLLOWUP_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        if code:
            self.code = code

    def as_issue(self) -> dict:
        return {"field": self.field or "", "code": self.code, "message": self.message}


class ConfigurationError(FollowupError):
    code = "CONFIGURATION_ERROR"


class MappingError(ConfigurationError):
    code = "MAPPING_ERROR"


class ConditionError(ConfigurationError):
    code = "INVALID_CONDITION"


class CronExpressionError(ConfigurationError):
    code = "INVALID_CRON"


class TemplateRenderError(ConfigurationError):
    code = "TEMPLATE_ERROR"


class UnsupportedConnectionError(ConfigurationError):
    code = "UNSUPPORTED_CONNECTION"


class TransientError(FollowupError):
    code = "TRANSIENT_ERROR"


class ConnectionUnavailableError(TransientError):
    code = "CONNECTION_UNAVAILABLE"


class RuleNotFoundError(FollowupError):
    code = "RULE_NOT_FOUND"


class DuplicateDeliveryError(FollowupError):
    """Another worker already holds the delivery slot for this dedupe key."""

    code = "DUPLICATE_DELIVERY"


def log_exception(
    logger: logging.Logger,
    message: str,
    *,
    extra: Optional[dict[str, Any]] = None,
    exc: Optional[BaseException] = None,
    level: int = logging.ERROR,
) -> None:
    context = ""
    if extra:
        context = " " + " ".join(f"{key}={extra[key]}" for key in sorted(extra))
    if exc is not None:
        exc_info: Any = (type(exc), exc, exc.__traceback__)
    else:
        exc_info = True
    logger.log(level, "%s%s", message, context, exc_info=exc_info)
