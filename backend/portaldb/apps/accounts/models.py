# backend/portaldb/apps/accounts/models.py

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    String,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship

from portaldb.database import Base
from portaldb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------


class AccountRole(str, enum.Enum):
    """Portal roles. Only the first two carry the admin capability."""

    SUPERUSER = "SUPERUSER"           # Platform owner
    ORG_ADMIN = "ORG_ADMIN"           # Org specific admin
    EMPLOYEE = "EMPLOYEE"


ADMIN_ROLES = frozenset({AccountRole.SUPERUSER, AccountRole.ORG_ADMIN})


# ---------------------------------------------------------------------------
# ORG (TENANT)
# ---------------------------------------------------------------------------


class Org(Base):
    """
    Tenant organisation.

    Every break record, capacity pool and audit row is scoped to an org.
    """

    __tablename__ = "orgs"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    code = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    time_zone = Column(
        String(64),
        nullable=True,
        doc="IANA zone used for 'today' boards, e.g. 'America/Chicago'",
    )

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    users = relationship("User", back_populates="org", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Org {self.code} {self.name}>"


# ---------------------------------------------------------------------------
# USER
# ---------------------------------------------------------------------------


class User(Base):
    """
    Portal user. `id` is the stable subject reference handed out by the
    identity provider (the JWT `sub` claim).
    """

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("org_id", "email", name="uq_users_org_email"),
        Index("idx_users_role_active", "role", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    org_id = Column(
        String(36),
        ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    email = Column(String(255), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)

    role = Column(
        Enum(AccountRole, name="account_role_enum"),
        nullable=False,
        default=AccountRole.EMPLOYEE,
        index=True,
    )

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    org = relationship("Org", back_populates="users")

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def display_label(self) -> str:
        return (self.email or "").strip().lower() or self.full_name

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"
