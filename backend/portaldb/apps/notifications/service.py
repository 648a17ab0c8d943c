from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from portaldb.database import WriteSessionLocal

from . import models, providers

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log(
    db: Session,
    *,
    org_id: str,
    user_id: str,
    subscription: Optional[models.PushSubscription],
    template_key: str,
    title: str,
    body: str,
    url: Optional[str],
    status: models.PushStatus,
    context: dict,
    correlation_id: Optional[str],
    error: Optional[str] = None,
) -> models.PushLog:
    log = models.PushLog(
        org_id=org_id,
        user_id=user_id,
        subscription_id=subscription.id if subscription is not None else None,
        template_key=template_key,
        title=title,
        body=body,
        url=url,
        status=status,
        error=error,
        context_json=context or {},
        correlation_id=correlation_id,
    )
    db.add(log)
    db.flush()
    return log


def send_push(
    template_key: str,
    user_id: str,
    title: str,
    body: str,
    context: dict,
    correlation_id: Optional[str],
    critical: bool = False,
    *,
    org_id: Optional[str] = None,
    url: Optional[str] = "/breaklock",
    db: Optional[Session] = None,
) -> List[models.PushLog]:
    """
    Send a push to every subscription of `user_id`, one log row each.

    Non-critical sends never raise for provider failures; the failure is
    recorded on the log row instead.
    """
    if not org_id:
        raise ValueError("org_id is required to create a push log entry")
    owns_session = db is None
    db = db or WriteSessionLocal()
    try:
        subscriptions = (
            db.query(models.PushSubscription)
            .filter(
                models.PushSubscription.org_id == org_id,
                models.PushSubscription.user_id == user_id,
            )
            .order_by(models.PushSubscription.created_at.asc())
            .all()
        )
        common = dict(
            org_id=org_id,
            user_id=user_id,
            template_key=template_key,
            title=title,
            body=body,
            url=url,
            context=context,
            correlation_id=correlation_id,
        )
        if not subscriptions:
            logs = [_log(db, subscription=None, status=models.PushStatus.SKIPPED_NO_SUBSCRIPTION, **common)]
            if owns_session:
                db.commit()
            return logs

        try:
            provider, configured = providers.get_push_provider()
        except ValueError as exc:
            if critical:
                raise
            logs = [
                _log(db, subscription=sub, status=models.PushStatus.FAILED, error=str(exc), **common)
                for sub in subscriptions
            ]
            if owns_session:
                db.commit()
            return logs

        logs = []
        payload = {"title": title, "body": body, "url": url, **(context or {})}
        for sub in subscriptions:
            if not configured:
                logs.append(
                    _log(
                        db,
                        subscription=sub,
                        status=models.PushStatus.SKIPPED_NO_PROVIDER,
                        error="No provider configured",
                        **common,
                    )
                )
                continue
            log = _log(db, subscription=sub, status=models.PushStatus.QUEUED, **common)
            try:
                provider.send(
                    endpoint=sub.endpoint,
                    p256dh=sub.p256dh,
                    auth=sub.auth,
                    payload=payload,
                    correlation_id=correlation_id,
                )
                log.status = models.PushStatus.SENT
                log.sent_at = _utcnow()
            except Exception as exc:
                log.status = models.PushStatus.FAILED
                log.error = str(exc)
                logger.warning(
                    "Push delivery failed",
                    extra={"org_id": org_id, "user_id": user_id, "subscription_id": sub.id},
                )
                if critical:
                    db.add(log)
                    if owns_session:
                        db.commit()
                    raise
            db.add(log)
            logs.append(log)
        if owns_session:
            db.commit()
        return logs
    finally:
        if owns_session:
            db.close()


def upsert_subscription(
    db: Session,
    *,
    org_id: str,
    user_id: str,
    endpoint: str,
    p256dh: str,
    auth: str,
    user_agent: Optional[str] = None,
) -> models.PushSubscription:
    sub = (
        db.query(models.PushSubscription)
        .filter(
            models.PushSubscription.user_id == user_id,
            models.PushSubscription.endpoint == endpoint,
        )
        .first()
    )
    if sub is None:
        sub = models.PushSubscription(org_id=org_id, user_id=user_id, endpoint=endpoint)
    sub.p256dh = p256dh
    sub.auth = auth
    sub.user_agent = user_agent
    db.add(sub)
    db.flush()
    return sub


def remove_subscription(db: Session, *, user_id: str, endpoint: str) -> int:
    return (
        db.query(models.PushSubscription)
        .filter(
            models.PushSubscription.user_id == user_id,
            models.PushSubscription.endpoint == endpoint,
        )
        .delete(synchronize_session=False)
    )
