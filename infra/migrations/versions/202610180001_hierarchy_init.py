"""hierarchy initial schema

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_correlation_id", "events", ["correlation_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_ts", "audit_logs", ["ts"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("role_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_status", "users", ["status"])
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "organization_units",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("short_name", sa.String(), nullable=True),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("unit_type", sa.String(), nullable=False),
        sa.Column("hierarchy_level", sa.Integer(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["parent_id"], ["organization_units.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_organization_units_name", "organization_units", ["name"])
    op.create_index("ix_organization_units_code", "organization_units", ["code"], unique=True)
    op.create_index("ix_organization_units_unit_type", "organization_units", ["unit_type"])
    op.create_index("ix_organization_units_hierarchy_level", "organization_units", ["hierarchy_level"])
    op.create_index("ix_organization_units_parent_id", "organization_units", ["parent_id"])
    op.create_index("ix_organization_units_path", "organization_units", ["path"], unique=True)
    op.create_index("ix_organization_units_is_active", "organization_units", ["is_active"])
    op.create_index("ix_organization_units_created_at", "organization_units", ["created_at"])

    op.create_table(
        "positions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_unit_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("is_managerial", sa.Boolean(), nullable=False),
        sa.Column("can_manage_subordinates", sa.Boolean(), nullable=False),
        sa.Column("can_assign_tasks", sa.Boolean(), nullable=False),
        sa.Column("can_issue_disciplinary_actions", sa.Boolean(), nullable=False),
        sa.Column("reports_to_position_id", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["organization_unit_id"], ["organization_units.id"]),
        sa.ForeignKeyConstraint(["reports_to_position_id"], ["positions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_positions_organization_unit_id", "positions", ["organization_unit_id"])
    op.create_index("ix_positions_title", "positions", ["title"])
    op.create_index("ix_positions_code", "positions", ["code"], unique=True)
    op.create_index("ix_positions_reports_to_position_id", "positions", ["reports_to_position_id"])
    op.create_index("ix_positions_is_active", "positions", ["is_active"])
    op.create_index("ix_positions_created_at", "positions", ["created_at"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("organization_unit_id", sa.String(), nullable=False),
        sa.Column("position_id", sa.String(), nullable=False),
        sa.Column("position_title_snapshot", sa.String(), nullable=False),
        sa.Column("appointment_type", sa.String(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_current", sa.Boolean(), nullable=False),
        sa.Column("dismissal_reason", sa.String(), nullable=True),
        sa.Column("appointment_order_reference", sa.String(), nullable=True),
        sa.Column("dismissal_order_reference", sa.String(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["organization_unit_id"], ["organization_units.id"]),
        sa.ForeignKeyConstraint(["position_id"], ["positions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_appointments_user_id", "appointments", ["user_id"])
    op.create_index("ix_appointments_start_date", "appointments", ["start_date"])
    op.create_index("ix_appointments_created_at", "appointments", ["created_at"])
    op.create_index("ix_appointments_position_current", "appointments", ["position_id", "is_current"])
    op.create_index("ix_appointments_unit_current", "appointments", ["organization_unit_id", "is_current"])
    op.create_index(
        "uq_appointments_user_current",
        "appointments",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
        sqlite_where=sa.text("is_current = 1"),
    )

    op.create_table(
        "channels",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("channel_type", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("organization_unit_id", sa.String(), nullable=True),
        sa.Column("auto_created", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("is_pinned", sa.Boolean(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("allowed_roles", sa.JSON(), nullable=False),
        sa.Column("subscriber_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("last_sync_error", sa.String(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["organization_unit_id"], ["organization_units.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_channels_owner_id", "channels", ["owner_id"])
    op.create_index("ix_channels_organization_unit_id", "channels", ["organization_unit_id"])
    op.create_index("ix_channels_auto_created", "channels", ["auto_created"])
    op.create_index("ix_channels_created_at", "channels", ["created_at"])

    op.create_table(
        "channel_subscriptions",
        sa.Column("channel_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("notifications", sa.Boolean(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("channel_id", "user_id"),
    )
    op.create_index("ix_channel_subscriptions_user", "channel_subscriptions", ["user_id"])


def downgrade() -> None:
    op.drop_table("channel_subscriptions")
    op.drop_table("channels")
    op.drop_table("appointments")
    op.drop_table("positions")
    op.drop_table("organization_units")
    op.drop_table("users")
    op.drop_table("audit_logs")
    op.drop_table("events")
