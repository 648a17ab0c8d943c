from __future__ import annotations

from datetime import datetime, timezone
import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)

from portaldb.database import Base
from portaldb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EndReason(str, enum.Enum):
    MANUAL = "MANUAL"
    EXPIRED = "EXPIRED"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"


class BreakRecord(Base):
    """
    One break, active while `ended_at` is NULL.

    `started_at` / `ends_at` never change after insert; `ended_at` and
    `end_reason` are written once, by a conditional update.
    """

    __tablename__ = "break_records"
    __table_args__ = (
        Index("ix_break_records_org_active", "org_id", "ended_at", "ends_at"),
        Index("ix_break_records_org_started", "org_id", "started_at"),
        Index("ix_break_records_due", "ended_at", "ends_at"),
        # At most one active break per subject, whatever the application does.
        Index(
            "uq_break_records_active_subject",
            "org_id",
            "subject_id",
            unique=True,
            sqlite_where=text("ended_at IS NULL"),
            postgresql_where=text("ended_at IS NULL"),
        ),
        CheckConstraint("ends_at > started_at", name="ck_break_records_window"),
        CheckConstraint(
            "(ended_at IS NULL) = (end_reason IS NULL)",
            name="ck_break_records_end_pair",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7, index=True)
    org_id = Column(String(36), ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True)
    subject_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    label = Column(String(255), nullable=False)

    started_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    end_reason = Column(
        SAEnum(EndReason, name="break_end_reason_enum", native_enum=False),
        nullable=True,
    )
    ended_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def __repr__(self) -> str:
        return f"<BreakRecord id={self.id} subject={self.subject_id} active={self.is_active}>"


class CapacityConfig(Base):
    """
    Per-org pool settings. The row is also the pool lock row: every
    transition selects it FOR UPDATE before reading the active count.
    """

    __tablename__ = "break_capacity_configs"
    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_break_capacity_positive"),
        CheckConstraint("default_duration_minutes > 0", name="ck_break_duration_positive"),
    )

    org_id = Column(String(36), ForeignKey("orgs.id", ondelete="CASCADE"), primary_key=True)
    capacity = Column(Integer, nullable=False)
    default_duration_minutes = Column(Integer, nullable=False)

    updated_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<CapacityConfig org={self.org_id} capacity={self.capacity}>"
