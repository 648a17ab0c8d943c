from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import PushStatus


class PushSubscriptionCreate(BaseModel):
    endpoint: str = Field(min_length=1)
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)
    user_agent: Optional[str] = None


class PushSubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    endpoint: str
    user_agent: Optional[str] = None
    created_at: datetime


class PushTestRequest(BaseModel):
    title: str = "BreakLock"
    body: str = "Test notification"
    url: Optional[str] = "/breaklock"


class PushLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    org_id: str
    user_id: Optional[str] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    template_key: str
    title: str
    body: Optional[str] = None
    status: PushStatus
    error: Optional[str] = None
    correlation_id: Optional[str] = None


class PushSendSummary(BaseModel):
    attempted: int
    sent: int
    statuses: list[PushStatus]
