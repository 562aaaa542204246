"""
SQLAlchemy model base class for the follow-up engine.

This package defines ORM models for tenant connections, field mappings,
follow-up rules and the delivery ledger. All models inherit from the
declarative `Base` defined here.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


from .connection import DbConnection  # noqa: E402,F401
from .mapping import FieldMapping  # noqa: E402,F401
from .followup_rule import FollowupRule  # noqa: E402,F401
from .delivery import Delivery  # noqa: E402,F401

__all__ = [
    "Base",
    "DbConnection",
    "FieldMapping",
    "FollowupRule",
    "Delivery",
]
