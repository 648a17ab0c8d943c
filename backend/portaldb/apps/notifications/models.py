from __future__ import annotations

from datetime import datetime, timezone
import enum

from sqlalchemy import Column, DateTime, Enum as SAEnum, ForeignKey, Index, JSON, String, Text, UniqueConstraint

from portaldb.database import Base
from portaldb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PushStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED_NO_PROVIDER = "SKIPPED_NO_PROVIDER"
    SKIPPED_NO_SUBSCRIPTION = "SKIPPED_NO_SUBSCRIPTION"


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "endpoint", name="uq_push_subscriptions_user_endpoint"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7, index=True)
    org_id = Column(String(36), ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    endpoint = Column(Text, nullable=False)
    p256dh = Column(String(255), nullable=False)
    auth = Column(String(255), nullable=False)
    user_agent = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<PushSubscription id={self.id} user={self.user_id}>"


class PushLog(Base):
    __tablename__ = "push_logs"
    __table_args__ = (
        Index("ix_push_logs_org_created", "org_id", "created_at"),
        Index("ix_push_logs_org_status", "org_id", "status"),
        Index("ix_push_logs_org_user", "org_id", "user_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7, index=True)
    org_id = Column(String(36), ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    subscription_id = Column(String(36), ForeignKey("push_subscriptions.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    template_key = Column(String(128), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    url = Column(String(255), nullable=True)
    status = Column(
        SAEnum(PushStatus, name="push_status_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    error = Column(Text, nullable=True)
    context_json = Column(JSON, nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<PushLog id={self.id} user={self.user_id} status={self.status}>"
