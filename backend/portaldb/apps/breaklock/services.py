from __future__ import annotations

import logging
import math
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from portaldb.apps.accounts import models as account_models
from portaldb.apps.audit import services as audit_services
from portaldb.apps.events.broker import notify_pool_changed
from portaldb.apps.notifications import service as notification_service

from . import models
from .errors import (
    AdmissionError,
    AlreadyActive,
    CapacityReached,
    Forbidden,
    InvalidValue,
    NotActive,
    NotFound,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = int(os.getenv("BREAKLOCK_DEFAULT_CAPACITY", "2"))
DEFAULT_DURATION_MINUTES = int(os.getenv("BREAKLOCK_DEFAULT_DURATION_MINUTES", "30"))

ENTITY_TYPE = "breaklock.break"
POOL_ENTITY_TYPE = "breaklock.pool"

_STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)

# One lock per org pool: the single-writer section inside this process.
# Across processes the FOR UPDATE on the capacity row does the same job.
_pool_locks: dict[str, threading.Lock] = {}
_pool_locks_guard = threading.Lock()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _pool_lock(org_id: str) -> threading.Lock:
    with _pool_locks_guard:
        lock = _pool_locks.get(org_id)
        if lock is None:
            lock = _pool_locks[org_id] = threading.Lock()
        return lock


def _positive_int(value, *, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidValue(f"{field_name} must be a positive integer", field=field_name, value=value)
    return value


# ---------------------------------------------------------------------------
# STORE HELPERS
# ---------------------------------------------------------------------------


def _active_filter(org_id: str):
    return (
        models.BreakRecord.org_id == org_id,
        models.BreakRecord.ended_at.is_(None),
    )


def _default_config(org_id: str) -> models.CapacityConfig:
    return models.CapacityConfig(
        org_id=org_id,
        capacity=DEFAULT_CAPACITY,
        default_duration_minutes=DEFAULT_DURATION_MINUTES,
    )


def _lock_config(db: Session, org_id: str) -> models.CapacityConfig:
    """Select the org's capacity row FOR UPDATE, creating it on first use."""
    query = (
        db.query(models.CapacityConfig)
        .filter(models.CapacityConfig.org_id == org_id)
        .with_for_update()
    )
    config = query.one_or_none()
    if config is not None:
        return config

    db.add(_default_config(org_id))
    try:
        db.flush()
    except IntegrityError:
        # Another worker created the row first; take theirs.
        db.rollback()
    return query.one()


def _active_for_subject(db: Session, org_id: str, subject_id: str) -> Optional[models.BreakRecord]:
    return (
        db.query(models.BreakRecord)
        .filter(*_active_filter(org_id), models.BreakRecord.subject_id == subject_id)
        .first()
    )


def _count_active(db: Session, org_id: str) -> int:
    return (
        db.query(func.count(models.BreakRecord.id))
        .filter(*_active_filter(org_id))
        .scalar()
    ) or 0


def _soonest_ends_at(db: Session, org_id: str) -> Optional[datetime]:
    value = (
        db.query(func.min(models.BreakRecord.ends_at))
        .filter(*_active_filter(org_id))
        .scalar()
    )
    return _as_utc(value)


def _close_record(
    db: Session,
    *,
    org_id: str,
    break_id: str,
    reason: models.EndReason,
    now: datetime,
    actor_user_id: Optional[str] = None,
    due_only: bool = False,
) -> bool:
    """
    Conditional end: only a still-active row is touched.

    Returns False when someone else ended the record first.
    """
    query = db.query(models.BreakRecord).filter(
        models.BreakRecord.id == break_id,
        models.BreakRecord.org_id == org_id,
        models.BreakRecord.ended_at.is_(None),
    )
    if due_only:
        query = query.filter(models.BreakRecord.ends_at <= now)
    updated = query.update(
        {
            models.BreakRecord.ended_at: now,
            models.BreakRecord.end_reason: reason,
            models.BreakRecord.ended_by_user_id: actor_user_id,
        },
        synchronize_session=False,
    )
    return updated == 1


def _break_snapshot(record: models.BreakRecord) -> dict:
    return {
        "subject_id": record.subject_id,
        "label": record.label,
        "started_at": str(record.started_at),
        "ends_at": str(record.ends_at),
        "ended_at": str(record.ended_at) if record.ended_at else None,
        "end_reason": record.end_reason.value if record.end_reason else None,
    }


@contextmanager
def pool_transaction(db: Session, org_id: str) -> Iterator[models.CapacityConfig]:
    """
    Run one BreakLock transition atomically for an org's pool.

    Holds the org's process lock and the capacity row lock from the first
    read to the commit. Any error rolls the whole transition back; store
    failures surface as StoreUnavailable.
    """
    with _pool_lock(org_id):
        try:
            config = _lock_config(db, org_id)
            yield config
            db.commit()
        except AdmissionError:
            db.rollback()
            raise
        except _STORE_ERRORS as exc:
            db.rollback()
            logger.warning(
                "Break store unavailable",
                extra={"org_id": org_id, "error": str(exc)},
            )
            raise StoreUnavailable(org_id=org_id) from exc
        except Exception:
            db.rollback()
            raise


@contextmanager
def _store_guard(db: Session, org_id: Optional[str] = None) -> Iterator[None]:
    """Plain reads: store failures surface as StoreUnavailable, like transitions."""
    try:
        yield
    except _STORE_ERRORS as exc:
        db.rollback()
        logger.warning(
            "Break store unavailable",
            extra={"org_id": org_id, "error": str(exc)},
        )
        raise StoreUnavailable(org_id=org_id) from exc


def _notify_subject(
    db: Session,
    record: models.BreakRecord,
    *,
    template_key: str,
    title: str,
    body: str,
) -> None:
    # Runs after the transition committed; a failure here never undoes it.
    try:
        notification_service.send_push(
            template_key,
            record.subject_id,
            title,
            body,
            {
                "break_id": str(record.id),
                "end_reason": record.end_reason.value if record.end_reason else None,
            },
            correlation_id=f"break:{record.id}:{template_key}",
            critical=False,
            org_id=record.org_id,
            db=db,
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.warning(
            "Failed to notify break subject",
            extra={"org_id": record.org_id, "break_id": record.id, "template_key": template_key},
        )


# ---------------------------------------------------------------------------
# ADMISSION CONTROLLER
# ---------------------------------------------------------------------------


def start_break(
    db: Session,
    *,
    org_id: str,
    subject_id: str,
    label: str,
    duration: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> models.BreakRecord:
    """
    Admit `subject_id` to the pool if it has no active break and a slot is free.

    Raises AlreadyActive (with the existing record) or CapacityReached.
    """
    now = _as_utc(now) or _utcnow()
    if duration is not None and duration <= timedelta(0):
        raise InvalidValue("duration must be positive", field="duration")

    with pool_transaction(db, org_id) as config:
        if duration is None:
            duration = timedelta(minutes=config.default_duration_minutes)

        existing = _active_for_subject(db, org_id, subject_id)
        if existing is not None:
            raise AlreadyActive(record=existing, break_id=existing.id)

        active_count = _count_active(db, org_id)
        if active_count >= config.capacity:
            raise CapacityReached(
                capacity=config.capacity,
                active_count=active_count,
                next_free_at=_soonest_ends_at(db, org_id),
            )

        record = models.BreakRecord(
            org_id=org_id,
            subject_id=subject_id,
            label=label,
            started_at=now,
            ends_at=now + duration,
        )
        db.add(record)
        try:
            db.flush()
        except IntegrityError as exc:
            # Partial unique index caught a start from another process.
            raise AlreadyActive() from exc

        audit_services.log_event(
            db,
            org_id=org_id,
            actor_user_id=subject_id,
            entity_type=ENTITY_TYPE,
            entity_id=str(record.id),
            action="start",
            after=_break_snapshot(record),
            context={"capacity": config.capacity},
            occurred_at=now,
        )

    logger.info(
        "Break started",
        extra={"org_id": org_id, "break_id": record.id, "subject_id": subject_id},
    )
    notify_pool_changed(org_id=org_id, action="start", entity_id=str(record.id), actor_user_id=subject_id)
    return record


def end_break(
    db: Session,
    *,
    org_id: str,
    subject_id: str,
    now: Optional[datetime] = None,
) -> models.BreakRecord:
    """End the subject's own active break. Raises NotActive when there is none."""
    now = _as_utc(now) or _utcnow()

    with pool_transaction(db, org_id):
        record = _active_for_subject(db, org_id, subject_id)
        if record is None:
            raise NotActive(subject_id=subject_id)
        if not _close_record(
            db,
            org_id=org_id,
            break_id=record.id,
            reason=models.EndReason.MANUAL,
            now=now,
        ):
            raise NotActive(subject_id=subject_id)
        db.refresh(record)
        audit_services.log_event(
            db,
            org_id=org_id,
            actor_user_id=subject_id,
            entity_type=ENTITY_TYPE,
            entity_id=str(record.id),
            action="end",
            before={"ended_at": None},
            after=_break_snapshot(record),
            occurred_at=now,
        )

    notify_pool_changed(org_id=org_id, action="end", entity_id=str(record.id), actor_user_id=subject_id)
    return record


def admin_override_end(
    db: Session,
    *,
    org_id: str,
    actor_user_id: str,
    actor_is_admin: bool,
    break_id: str,
    now: Optional[datetime] = None,
) -> models.BreakRecord:
    """
    Force-end someone's break. Admins only; NotFound when the break is
    missing from this org or has already ended.
    """
    if not actor_is_admin:
        raise Forbidden(action="override")
    now = _as_utc(now) or _utcnow()

    with pool_transaction(db, org_id):
        record = (
            db.query(models.BreakRecord)
            .filter(models.BreakRecord.id == break_id, models.BreakRecord.org_id == org_id)
            .first()
        )
        if record is None or record.ended_at is not None:
            raise NotFound(break_id=break_id)
        if not _close_record(
            db,
            org_id=org_id,
            break_id=break_id,
            reason=models.EndReason.ADMIN_OVERRIDE,
            now=now,
            actor_user_id=actor_user_id,
        ):
            raise NotFound(break_id=break_id)
        db.refresh(record)
        audit_services.log_event(
            db,
            org_id=org_id,
            actor_user_id=actor_user_id,
            entity_type=ENTITY_TYPE,
            entity_id=str(record.id),
            action="admin_override",
            before={"ended_at": None},
            after=_break_snapshot(record),
            occurred_at=now,
        )

    logger.info(
        "Break ended by admin override",
        extra={"org_id": org_id, "break_id": break_id, "actor_user_id": actor_user_id},
    )
    notify_pool_changed(org_id=org_id, action="admin_override", entity_id=break_id, actor_user_id=actor_user_id)
    _notify_subject(
        db,
        record,
        template_key="break_admin_override",
        title="Break ended",
        body="An admin ended your break.",
    )
    return record


def expire_break(
    db: Session,
    *,
    org_id: str,
    break_id: str,
    now: Optional[datetime] = None,
) -> Optional[models.BreakRecord]:
    """
    End one overdue break with reason EXPIRED.

    Returns None when the break was already ended (or is not due yet), so
    the sweep can skip it without treating it as a failure.
    """
    now = _as_utc(now) or _utcnow()

    with pool_transaction(db, org_id):
        if not _close_record(
            db,
            org_id=org_id,
            break_id=break_id,
            reason=models.EndReason.EXPIRED,
            now=now,
            due_only=True,
        ):
            return None
        record = (
            db.query(models.BreakRecord)
            .filter(models.BreakRecord.id == break_id)
            .populate_existing()
            .one()
        )
        audit_services.log_event(
            db,
            org_id=org_id,
            actor_user_id=None,
            entity_type=ENTITY_TYPE,
            entity_id=str(record.id),
            action="expire",
            before={"ended_at": None},
            after=_break_snapshot(record),
            occurred_at=now,
        )

    notify_pool_changed(org_id=org_id, action="expire", entity_id=break_id)
    _notify_subject(
        db,
        record,
        template_key="break_expired",
        title="Break over",
        body="Your break time is up.",
    )
    return record


def list_active(db: Session, *, org_id: str) -> Sequence[models.BreakRecord]:
    """Active breaks, soonest to end first."""
    with _store_guard(db, org_id):
        return (
            db.query(models.BreakRecord)
            .filter(*_active_filter(org_id))
            .order_by(
                models.BreakRecord.ends_at.asc(),
                models.BreakRecord.started_at.asc(),
                models.BreakRecord.id.asc(),
            )
            .all()
        )


def get_capacity(db: Session, *, org_id: str) -> models.CapacityConfig:
    """The org's pool settings; unsaved defaults until the pool is first used."""
    with _store_guard(db, org_id):
        config = (
            db.query(models.CapacityConfig)
            .filter(models.CapacityConfig.org_id == org_id)
            .one_or_none()
        )
    return config if config is not None else _default_config(org_id)


def set_capacity(
    db: Session,
    *,
    org_id: str,
    actor_user_id: str,
    actor_is_admin: bool,
    capacity: int,
    default_duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.CapacityConfig:
    """
    Change the pool size. Lowering it never ends running breaks; new
    starts are refused until attrition brings the count under the limit.
    """
    if not actor_is_admin:
        raise Forbidden(action="set_capacity")
    capacity = _positive_int(capacity, field_name="capacity")
    if default_duration_minutes is not None:
        default_duration_minutes = _positive_int(
            default_duration_minutes, field_name="default_duration_minutes"
        )
    now = _as_utc(now) or _utcnow()

    with pool_transaction(db, org_id) as config:
        before = {
            "capacity": config.capacity,
            "default_duration_minutes": config.default_duration_minutes,
        }
        config.capacity = capacity
        if default_duration_minutes is not None:
            config.default_duration_minutes = default_duration_minutes
        config.updated_by_user_id = actor_user_id
        config.updated_at = now
        db.add(config)
        db.flush()
        audit_services.log_event(
            db,
            org_id=org_id,
            actor_user_id=actor_user_id,
            entity_type=POOL_ENTITY_TYPE,
            entity_id=org_id,
            action="set_capacity",
            before=before,
            after={
                "capacity": config.capacity,
                "default_duration_minutes": config.default_duration_minutes,
            },
            occurred_at=now,
            critical=True,
        )

    notify_pool_changed(org_id=org_id, action="set_capacity", entity_id=org_id, actor_user_id=actor_user_id)
    return config


# ---------------------------------------------------------------------------
# EXPIRY SWEEP
# ---------------------------------------------------------------------------


def run_expiry_sweep(
    db: Session,
    *,
    now: Optional[datetime] = None,
    org_id: Optional[str] = None,
) -> dict:
    """
    Force-end every active break whose `ends_at` has passed.

    Each record is expired in its own pool transaction. Records ended
    meanwhile are skipped; a failure on one record is logged and the
    sweep moves on. Returns a summary dict for logging/cron visibility.
    """
    now = _as_utc(now) or _utcnow()

    with _store_guard(db, org_id):
        query = db.query(models.BreakRecord.id, models.BreakRecord.org_id).filter(
            models.BreakRecord.ended_at.is_(None),
            models.BreakRecord.ends_at <= now,
        )
        if org_id:
            query = query.filter(models.BreakRecord.org_id == org_id)
        candidates: List[Tuple[str, str]] = [
            (row[0], row[1]) for row in query.order_by(models.BreakRecord.ends_at.asc()).all()
        ]
        db.commit()

    summary = {"scanned": len(candidates), "expired": 0, "skipped": 0, "failed": 0}
    for break_id, record_org_id in candidates:
        try:
            record = expire_break(db, org_id=record_org_id, break_id=break_id, now=now)
        except Exception:
            logger.exception(
                "Failed to expire break",
                extra={"org_id": record_org_id, "break_id": break_id},
            )
            summary["failed"] += 1
            continue
        if record is None:
            summary["skipped"] += 1
        else:
            summary["expired"] += 1

    if candidates:
        logger.info("BreakLock expiry sweep finished", extra=summary)
    return summary


# ---------------------------------------------------------------------------
# DERIVED VIEWS
# ---------------------------------------------------------------------------


def remaining_seconds(record: models.BreakRecord, now: Optional[datetime] = None) -> int:
    """
    Seconds left on a break, for countdown displays only. Expiry itself
    is decided by the sweep, never by this number.
    """
    if record.ended_at is not None:
        return 0
    now = _as_utc(now) or _utcnow()
    left = (_as_utc(record.ends_at) - now).total_seconds()
    return max(0, math.ceil(left))


@dataclass
class PoolStatus:
    org_id: str
    capacity: int
    default_duration_minutes: int
    active: List[models.BreakRecord]
    as_of: datetime
    my_break: Optional[models.BreakRecord] = None

    @property
    def active_count(self) -> int:
        return len(self.active)

    @property
    def available(self) -> int:
        return max(0, self.capacity - self.active_count)

    @property
    def locked(self) -> bool:
        return self.active_count >= self.capacity

    @property
    def next_free_at(self) -> Optional[datetime]:
        if not self.locked or not self.active:
            return None
        return _as_utc(self.active[0].ends_at)


def get_pool_status(
    db: Session,
    *,
    org_id: str,
    subject_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PoolStatus:
    config = get_capacity(db, org_id=org_id)
    active = list(list_active(db, org_id=org_id))
    my_break = None
    if subject_id:
        my_break = next((record for record in active if record.subject_id == subject_id), None)
    return PoolStatus(
        org_id=org_id,
        capacity=config.capacity,
        default_duration_minutes=config.default_duration_minutes,
        active=active,
        as_of=_as_utc(now) or _utcnow(),
        my_break=my_break,
    )


def _org_zone(db: Session, org_id: str) -> ZoneInfo:
    org = db.query(account_models.Org).filter(account_models.Org.id == org_id).first()
    name = (org.time_zone or "").strip() if org else ""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown org time zone, using UTC", extra={"org_id": org_id, "time_zone": name})
        return ZoneInfo("UTC")


@dataclass
class DayBreaks:
    day: date
    time_zone: str
    records: List[models.BreakRecord] = field(default_factory=list)


def list_breaks_for_day(
    db: Session,
    *,
    org_id: str,
    day: Optional[date] = None,
    now: Optional[datetime] = None,
) -> DayBreaks:
    """All breaks started on one local calendar day of the org, oldest first."""
    with _store_guard(db, org_id):
        zone = _org_zone(db, org_id)
        if day is None:
            day = (_as_utc(now) or _utcnow()).astimezone(zone).date()
        start_local = datetime.combine(day, time.min, tzinfo=zone)
        start_utc = start_local.astimezone(timezone.utc)
        end_utc = (start_local + timedelta(days=1)).astimezone(timezone.utc)

        records = (
            db.query(models.BreakRecord)
            .filter(
                models.BreakRecord.org_id == org_id,
                models.BreakRecord.started_at >= start_utc,
                models.BreakRecord.started_at < end_utc,
            )
            .order_by(models.BreakRecord.started_at.asc(), models.BreakRecord.id.asc())
            .all()
        )
    return DayBreaks(day=day, time_zone=str(zone.key), records=list(records))


def group_breaks_by_label(
    records: Sequence[models.BreakRecord],
) -> List[Tuple[str, List[models.BreakRecord]]]:
    """Group a day's breaks per person for the board, people sorted by label."""
    groups: dict[str, Tuple[str, List[models.BreakRecord]]] = {}
    for record in records:
        key = (record.label or "unknown").strip().lower()
        if key not in groups:
            groups[key] = (record.label or "unknown", [])
        groups[key][1].append(record)
    return [groups[key] for key in sorted(groups)]
