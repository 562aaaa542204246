"""
Field mappings: translate canonical roles to a tenant resource's columns.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base, utcnow


class FieldMapping(Base):
    __tablename__ = "followup_mappings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("followup_connections.id", ondelete="CASCADE"), index=True
    )
    resource: Mapped[str] = mapped_column(String(256))  # table or collection name
    fields: Mapped[dict] = mapped_column(JSON, default=dict)  # role -> column
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    connection = relationship("DbConnection", back_populates="mappings")
    rules = relationship("FollowupRule", back_populates="mapping", cascade="all, delete-orphan")
