"""
Pydantic schemas for field mappings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class MappingCreate(BaseModel):
    connection_id: str
    resource: str = Field(min_length=1, max_length=256)
    fields: Dict[str, str]


class MappingUpdate(BaseModel):
    resource: Optional[str] = Field(default=None, min_length=1, max_length=256)
    fields: Optional[Dict[str, str]] = None


class MappingOut(BaseModel):
    id: str
    tenant_id: str
    connection_id: str
    resource: str
    fields: Dict[str, str]
    validated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
