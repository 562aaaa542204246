"""
Pydantic schemas for tenant database connections.

Passwords are write-only: accepted on create/update, never serialized.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Literal

from pydantic import BaseModel, ConfigDict, Field


ConnectionType = Literal["POSTGRESQL", "MYSQL", "SQLITE", "MONGODB", "FIREBASE"]


class ConnectionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    type: ConnectionType
    database: str = Field(min_length=1)
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None
    tenant_id: Optional[str] = None


class ConnectionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    database: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None


class ConnectionOut(BaseModel):
    id: str
    tenant_id: str
    name: str
    type: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: str
    username: Optional[str] = None
    status: str
    last_error: Optional[str] = None
    last_tested_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
