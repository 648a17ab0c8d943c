# backend/portaldb/apps/accounts/schemas.py

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .models import AccountRole


class OrgRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    name: str
    time_zone: Optional[str] = None
    is_active: bool


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    org_id: str
    email: str
    full_name: str
    role: AccountRole
    is_active: bool
    is_admin: bool
    created_at: datetime
