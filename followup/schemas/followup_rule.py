"""
Pydantic schemas for follow-up rules and their deliveries.

``condition`` and ``action`` stay as raw JSON here; their structure is
checked by the rule validator so errors come back as issue lists.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import DEFAULT_CRON_EXPRESSION


class RuleCreate(BaseModel):
    mapping_id: str
    name: str = Field(min_length=1, max_length=256)
    active: bool = True
    schedule_cron: str = DEFAULT_CRON_EXPRESSION
    condition: Dict[str, Any]
    action: Dict[str, Any]


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=256)
    active: Optional[bool] = None
    schedule_cron: Optional[str] = None
    condition: Optional[Dict[str, Any]] = None
    action: Optional[Dict[str, Any]] = None


class RuleOut(BaseModel):
    id: str
    tenant_id: str
    mapping_id: str
    name: str
    active: bool
    schedule_cron: str
    condition: Dict[str, Any]
    action: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeliveryOut(BaseModel):
    id: str
    rule_id: str
    entity_pk: Optional[str] = None
    contact: str
    channel: str
    status: str
    dedupe_key: str
    idempotency_key: str
    subject: Optional[str] = None
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
