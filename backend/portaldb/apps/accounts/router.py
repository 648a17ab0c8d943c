# backend/portaldb/apps/accounts/router.py

from __future__ import annotations

from fastapi import APIRouter, Depends

from portaldb.security import get_current_active_user

from . import models, schemas

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("/me", response_model=schemas.UserRead)
def read_me(current_user: models.User = Depends(get_current_active_user)):
    """Identity echo so clients know their subject id and admin capability."""
    return current_user
