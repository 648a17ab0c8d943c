from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from portaldb.security import get_current_active_user, require_admin
from portaldb.apps.accounts.models import User
from portaldb.database import get_db

from . import models, schemas, service


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post(
    "/push/subscriptions",
    response_model=schemas.PushSubscriptionRead,
    status_code=status.HTTP_201_CREATED,
)
def register_subscription(
    payload: schemas.PushSubscriptionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    sub = service.upsert_subscription(
        db,
        org_id=current_user.org_id,
        user_id=current_user.id,
        endpoint=payload.endpoint,
        p256dh=payload.p256dh,
        auth=payload.auth,
        user_agent=payload.user_agent,
    )
    db.commit()
    db.refresh(sub)
    return sub


@router.delete("/push/subscriptions", status_code=status.HTTP_204_NO_CONTENT)
def remove_subscription(
    endpoint: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    removed = service.remove_subscription(db, user_id=current_user.id, endpoint=endpoint)
    if not removed:
        raise HTTPException(status_code=404, detail="Subscription not found")
    db.commit()


@router.post("/push/test", response_model=schemas.PushSendSummary)
def send_test_push(
    payload: schemas.PushTestRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    logs = service.send_push(
        "push_test",
        current_user.id,
        payload.title,
        payload.body,
        {},
        correlation_id=f"push-test:{current_user.id}",
        org_id=current_user.org_id,
        url=payload.url,
        db=db,
    )
    db.commit()
    return schemas.PushSendSummary(
        attempted=len(logs),
        sent=sum(1 for log in logs if log.status == models.PushStatus.SENT),
        statuses=[log.status for log in logs],
    )


@router.get("/push/logs", response_model=List[schemas.PushLogRead])
def list_push_logs(
    status: Optional[models.PushStatus] = None,
    template_key: Optional[str] = None,
    user_id: Optional[str] = None,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    qs = db.query(models.PushLog).filter(models.PushLog.org_id == current_user.org_id)
    if status:
        qs = qs.filter(models.PushLog.status == status)
    if template_key:
        qs = qs.filter(models.PushLog.template_key == template_key)
    if user_id:
        qs = qs.filter(models.PushLog.user_id == user_id)
    if start:
        qs = qs.filter(models.PushLog.created_at >= start)
    if end:
        qs = qs.filter(models.PushLog.created_at <= end)
    return qs.order_by(models.PushLog.created_at.desc()).all()
