"""
Delivery ledger: one row per attempted follow-up contact.

The partial unique index on ``dedupe_key`` is what makes delivery
at-most-once. Only pending and sent rows occupy it, so a failed attempt
can be retried by a later tick.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, Text, Index, ForeignKey, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base, utcnow


STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

_ACTIVE_SLOT = text("status != 'failed'")


class Delivery(Base):
    __tablename__ = "followup_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("followup_rules.id", ondelete="CASCADE"), index=True)
    entity_pk: Mapped[str | None] = mapped_column(String(256), nullable=True)
    contact: Mapped[str] = mapped_column(String(256))
    channel: Mapped[str] = mapped_column(String(16))  # email | sms | whatsapp | dashboard
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING)  # pending | sent | failed
    dedupe_key: Mapped[str] = mapped_column(String(512))
    idempotency_key: Mapped[str] = mapped_column(String(64), index=True)
    subject: Mapped[str | None] = mapped_column(String(512), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    rule = relationship("FollowupRule", back_populates="deliveries")

    __table_args__ = (
        Index(
            "uq_followup_deliveries_dedupe_active",
            "dedupe_key",
            unique=True,
            sqlite_where=_ACTIVE_SLOT,
            postgresql_where=_ACTIVE_SLOT,
        ),
        Index("ix_followup_deliveries_rule_status", "rule_id", "status"),
    )
