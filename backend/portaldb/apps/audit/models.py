from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, JSON, String, desc

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(Base):
    """
    One BreakLock change: a break transition (`breaklock.break`, keyed by
    break id) or a pool setting change (`breaklock.pool`, keyed by org id).

    Rows are only ever inserted. `before`/`after` hold the changed fields;
    `context` holds facts at the time of the change (e.g. pool capacity).
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_org_entity", "org_id", "entity_type", "entity_id"),
        Index("ix_audit_events_org_time_desc", "org_id", desc("occurred_at")),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    org_id = Column(String(36), ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(32), nullable=False)
    actor_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    context = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.entity_type}:{self.entity_id} {self.action} at={self.occurred_at}>"
