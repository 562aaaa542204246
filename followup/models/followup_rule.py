"""
Follow-up rules: when rows of a mapped resource satisfy a condition, act.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, Boolean, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base, utcnow
from ..core.config import DEFAULT_CRON_EXPRESSION


class FollowupRule(Base):
    __tablename__ = "followup_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    mapping_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("followup_mappings.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(256))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    schedule_cron: Mapped[str] = mapped_column(String(64), default=DEFAULT_CRON_EXPRESSION)
    condition: Mapped[dict] = mapped_column(JSON, default=dict)
    # {channel, subject?, content?, messageTemplate?, senderEmail?}
    action: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    mapping = relationship("FieldMapping", back_populates="rules")
    deliveries = relationship("Delivery", back_populates="rule", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_followup_rules_active_tenant", "active", "tenant_id"),
    )
