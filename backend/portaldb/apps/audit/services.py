from __future__ import annotations

from datetime import datetime
import logging
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)

BREAKLOCK_PREFIX = "breaklock."
BREAK_ENTITY = "breaklock.break"

MAX_TRAIL_ROWS = 500


def _write_event(db: Session, **fields) -> models.AuditEvent:
    if fields.get("occurred_at") is None:
        fields.pop("occurred_at", None)
    event = models.AuditEvent(**fields)
    db.add(event)
    db.flush()
    return event


def log_event(
    db: Session,
    *,
    org_id: str,
    actor_user_id: Optional[str],
    entity_type: str,
    entity_id: str,
    action: str,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    context: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
    critical: bool = False,
) -> Optional[models.AuditEvent]:
    """
    Record one BreakLock change inside the caller's transaction.

    The insert runs in a savepoint, so a failed write leaves the
    transition itself intact. Capacity changes pass `critical=True` and
    get the error; break transitions only log a warning.
    """
    try:
        with db.begin_nested():
            return _write_event(
                db,
                org_id=org_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor_user_id=actor_user_id,
                occurred_at=occurred_at,
                before=before,
                after=after,
                context=context,
            )
    except Exception:
        logger.warning(
            "Failed to log audit event",
            extra={
                "org_id": org_id,
                "entity": f"{entity_type}:{entity_id}",
                "action": action,
                "critical": critical,
            },
        )
        if critical:
            raise
        return None


def list_breaklock_trail(
    db: Session,
    *,
    org_id: str,
    break_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
) -> Sequence[models.AuditEvent]:
    """Newest BreakLock changes of one org; `break_id` narrows to a single break."""
    query = db.query(models.AuditEvent).filter(
        models.AuditEvent.org_id == org_id,
        models.AuditEvent.entity_type.startswith(BREAKLOCK_PREFIX),
    )
    if break_id:
        query = query.filter(
            models.AuditEvent.entity_type == BREAK_ENTITY,
            models.AuditEvent.entity_id == break_id,
        )
    if since:
        query = query.filter(models.AuditEvent.occurred_at >= since)
    return (
        query.order_by(models.AuditEvent.occurred_at.desc(), models.AuditEvent.id.desc())
        .limit(max(1, min(limit, MAX_TRAIL_ROWS)))
        .all()
    )
