from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from portaldb.security import require_admin
from portaldb.apps.accounts.models import User
from portaldb.database import get_read_db

from . import schemas, services


router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/breaklock", response_model=List[schemas.AuditEntryRead])
def read_breaklock_trail(
    break_id: Optional[str] = Query(None, description="Only the history of this break"),
    since: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=services.MAX_TRAIL_ROWS),
    db: Session = Depends(get_read_db),
    current_user: User = Depends(require_admin),
):
    """Who started, ended, overrode or resized what, newest first."""
    return services.list_breaklock_trail(
        db,
        org_id=current_user.org_id,
        break_id=break_id,
        since=since,
        limit=limit,
    )
