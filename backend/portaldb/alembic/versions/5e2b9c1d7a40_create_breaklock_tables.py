"""create orgs, users, breaklock, audit and push tables

Revision ID: 5e2b9c1d7a40
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5e2b9c1d7a40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ACCOUNT_ROLES = ("SUPERUSER", "ORG_ADMIN", "EMPLOYEE")
END_REASONS = ("MANUAL", "EXPIRED", "ADMIN_OVERRIDE")
PUSH_STATUSES = ("QUEUED", "SENT", "FAILED", "SKIPPED_NO_PROVIDER", "SKIPPED_NO_SUBSCRIPTION")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "orgs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("time_zone", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_orgs_code", "orgs", ["code"], unique=True)
    op.create_index("ix_orgs_is_active", "orgs", ["is_active"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.Enum(*ACCOUNT_ROLES, name="account_role_enum"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("org_id", "email", name="uq_users_org_email"),
    )
    op.create_index("ix_users_org_id", "users", ["org_id"])
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_is_active", "users", ["is_active"])
    op.create_index("idx_users_role_active", "users", ["role", "is_active"])

    op.create_table(
        "break_capacity_configs",
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("default_duration_minutes", sa.Integer(), nullable=False),
        sa.Column(
            "updated_by_user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("capacity > 0", name="ck_break_capacity_positive"),
        sa.CheckConstraint("default_duration_minutes > 0", name="ck_break_duration_positive"),
    )

    op.create_table(
        "break_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subject_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        _ts("started_at"),
        _ts("ends_at"),
        _ts("ended_at", nullable=True),
        sa.Column(
            "end_reason",
            sa.Enum(*END_REASONS, name="break_end_reason_enum", native_enum=False),
            nullable=True,
        ),
        sa.Column(
            "ended_by_user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("created_at"),
        sa.CheckConstraint("ends_at > started_at", name="ck_break_records_window"),
        sa.CheckConstraint("(ended_at IS NULL) = (end_reason IS NULL)", name="ck_break_records_end_pair"),
    )
    op.create_index("ix_break_records_id", "break_records", ["id"])
    op.create_index("ix_break_records_org_id", "break_records", ["org_id"])
    op.create_index("ix_break_records_subject_id", "break_records", ["subject_id"])
    op.create_index("ix_break_records_org_active", "break_records", ["org_id", "ended_at", "ends_at"])
    op.create_index("ix_break_records_org_started", "break_records", ["org_id", "started_at"])
    op.create_index("ix_break_records_due", "break_records", ["ended_at", "ends_at"])
    op.create_index(
        "uq_break_records_active_subject",
        "break_records",
        ["org_id", "subject_id"],
        unique=True,
        sqlite_where=sa.text("ended_at IS NULL"),
        postgresql_where=sa.text("ended_at IS NULL"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column(
            "actor_user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("occurred_at"),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_events_org_id", "audit_events", ["org_id"])
    op.create_index("ix_audit_events_org_entity", "audit_events", ["org_id", "entity_type", "entity_id"])
    op.create_index("ix_audit_events_org_time_desc", "audit_events", ["org_id", sa.text("occurred_at DESC")])

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.String(length=255), nullable=False),
        sa.Column("auth", sa.String(length=255), nullable=False),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("user_id", "endpoint", name="uq_push_subscriptions_user_endpoint"),
    )
    for column in ("id", "org_id", "user_id"):
        op.create_index(f"ix_push_subscriptions_{column}", "push_subscriptions", [column])

    op.create_table(
        "push_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "subscription_id",
            sa.String(length=36),
            sa.ForeignKey("push_subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("created_at"),
        _ts("sent_at", nullable=True),
        sa.Column("template_key", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("url", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*PUSH_STATUSES, name="push_status_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("context_json", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=True),
    )
    for column in ("id", "org_id", "user_id", "created_at", "template_key", "status", "correlation_id"):
        op.create_index(f"ix_push_logs_{column}", "push_logs", [column])
    op.create_index("ix_push_logs_org_created", "push_logs", ["org_id", "created_at"])
    op.create_index("ix_push_logs_org_status", "push_logs", ["org_id", "status"])
    op.create_index("ix_push_logs_org_user", "push_logs", ["org_id", "user_id"])


def downgrade() -> None:
    op.drop_table("push_logs")
    op.drop_table("push_subscriptions")
    op.drop_table("audit_events")
    op.drop_index("uq_break_records_active_subject", table_name="break_records")
    op.drop_table("break_records")
    op.drop_table("break_capacity_configs")
    op.drop_table("users")
    op.drop_table("orgs")
    sa.Enum(name="account_role_enum").drop(op.get_bind(), checkfirst=True)
