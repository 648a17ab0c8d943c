from __future__ import annotations

import hmac
import os
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from portaldb.security import get_current_active_user
from portaldb.apps.accounts import models as account_models
from portaldb.database import get_db, get_read_db

from . import models, schemas, services
from .errors import AdmissionError, AlreadyActive


router = APIRouter(prefix="/breaklock", tags=["breaklock"])


def _http_error(exc: AdmissionError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=exc.to_detail())


def _break_read(record: models.BreakRecord, now: datetime) -> schemas.BreakRead:
    read = schemas.BreakRead.model_validate(record)
    return read.model_copy(update={"remaining_seconds": services.remaining_seconds(record, now)})


def _tick_secret() -> str:
    return os.getenv("BREAKLOCK_TICK_SECRET", "").strip()


@router.get("/status", response_model=schemas.PoolStatusRead)
def read_status(
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    try:
        pool = services.get_pool_status(db, org_id=current_user.org_id, subject_id=current_user.id)
    except AdmissionError as exc:
        raise _http_error(exc)
    return schemas.PoolStatusRead(
        org_id=pool.org_id,
        capacity=pool.capacity,
        default_duration_minutes=pool.default_duration_minutes,
        active_count=pool.active_count,
        available=pool.available,
        locked=pool.locked,
        next_free_at=pool.next_free_at,
        as_of=pool.as_of,
        active=[_break_read(record, pool.as_of) for record in pool.active],
        my_break=_break_read(pool.my_break, pool.as_of) if pool.my_break else None,
    )


@router.get("/active", response_model=List[schemas.BreakRead])
def list_active_breaks(
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    now = datetime.now(timezone.utc)
    try:
        records = services.list_active(db, org_id=current_user.org_id)
    except AdmissionError as exc:
        raise _http_error(exc)
    return [_break_read(record, now) for record in records]


@router.post("/start", response_model=schemas.StartBreakResponse)
def start_break(
    payload: Optional[schemas.StartBreakRequest] = Body(default=None),
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    duration = None
    if payload is not None and payload.duration_minutes is not None:
        duration = timedelta(minutes=payload.duration_minutes)
    try:
        record = services.start_break(
            db,
            org_id=current_user.org_id,
            subject_id=current_user.id,
            label=current_user.display_label,
            duration=duration,
        )
    except AlreadyActive as exc:
        existing = exc.record
        return schemas.StartBreakResponse(
            already_active=True,
            message=exc.message,
            break_=_break_read(existing, datetime.now(timezone.utc)) if existing is not None else None,
        )
    except AdmissionError as exc:
        raise _http_error(exc)
    return schemas.StartBreakResponse(
        message="Break started",
        break_=_break_read(record, datetime.now(timezone.utc)),
    )


@router.post("/end", response_model=schemas.EndBreakResponse)
def end_my_break(
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    try:
        record = services.end_break(db, org_id=current_user.org_id, subject_id=current_user.id)
    except AdmissionError as exc:
        raise _http_error(exc)
    return schemas.EndBreakResponse(message="Break ended", break_=_break_read(record, datetime.now(timezone.utc)))


@router.post("/{break_id}/override", response_model=schemas.EndBreakResponse)
def override_end_break(
    break_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    try:
        record = services.admin_override_end(
            db,
            org_id=current_user.org_id,
            actor_user_id=current_user.id,
            actor_is_admin=current_user.is_admin,
            break_id=break_id,
        )
    except AdmissionError as exc:
        raise _http_error(exc)
    return schemas.EndBreakResponse(
        message="Admin override ended the break",
        break_=_break_read(record, datetime.now(timezone.utc)),
    )


@router.get("/capacity", response_model=schemas.CapacityRead)
def read_capacity(
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    try:
        return services.get_capacity(db, org_id=current_user.org_id)
    except AdmissionError as exc:
        raise _http_error(exc)


@router.put("/capacity", response_model=schemas.CapacityRead)
def update_capacity(
    payload: schemas.CapacityUpdate,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    try:
        return services.set_capacity(
            db,
            org_id=current_user.org_id,
            actor_user_id=current_user.id,
            actor_is_admin=current_user.is_admin,
            capacity=payload.capacity,
            default_duration_minutes=payload.default_duration_minutes,
        )
    except AdmissionError as exc:
        raise _http_error(exc)


@router.get("/today", response_model=schemas.DayBoardRead)
def read_day_board(
    day: Optional[date] = Query(None, description="Local calendar day; defaults to today in the org's zone"),
    db: Session = Depends(get_read_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    now = datetime.now(timezone.utc)
    try:
        result = services.list_breaks_for_day(db, org_id=current_user.org_id, day=day, now=now)
    except AdmissionError as exc:
        raise _http_error(exc)
    return schemas.DayBoardRead(
        day=result.day,
        time_zone=result.time_zone,
        total=len(result.records),
        people=[
            schemas.PersonBreaks(label=label, breaks=[_break_read(record, now) for record in records])
            for label, records in services.group_breaks_by_label(result.records)
        ],
    )


@router.post("/tick", response_model=schemas.TickResult)
def run_tick(
    x_tick_secret: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    """Expiry sweep trigger for an external scheduler (cron)."""
    secret = _tick_secret()
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Tick endpoint disabled")
    if not x_tick_secret or not hmac.compare_digest(x_tick_secret.encode(), secret.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid tick secret")
    try:
        summary = services.run_expiry_sweep(db)
    except AdmissionError as exc:
        raise _http_error(exc)
    return schemas.TickResult(
        ended=summary["expired"],
        scanned=summary["scanned"],
        skipped=summary["skipped"],
        failed=summary["failed"],
    )
