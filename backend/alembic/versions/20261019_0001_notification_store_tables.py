"""Create event, user, reminder flag, variant assignment, and notification record tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("participant_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("participant_reminders_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_starts_at", "events", ["starts_at"], unique=False)

    op.create_table(
        "event_reminder_flags",
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("lead_time_label", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.event_id"]),
        sa.PrimaryKeyConstraint("event_id", "lead_time_label"),
    )

    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("push_token", sa.String(length=512), nullable=True),
        sa.Column("notification_preferences_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "variant_assignments",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("experiment_id", sa.String(length=128), nullable=False),
        sa.Column("variant_id", sa.String(length=64), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"]),
        sa.PrimaryKeyConstraint("user_id", "experiment_id"),
    )

    op.create_table(
        "notification_records",
        sa.Column("record_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("notification_type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=True),
        sa.Column("action_data", sa.String(length=256), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index("ix_notification_records_user_id", "notification_records", ["user_id"], unique=False)
    op.create_index("ix_notification_records_created_at", "notification_records", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_notification_records_created_at", table_name="notification_records")
    op.drop_index("ix_notification_records_user_id", table_name="notification_records")
    op.drop_table("notification_records")
    op.drop_table("variant_assignments")
    op.drop_table("users")
    op.drop_table("event_reminder_flags")
    op.drop_index("ix_events_starts_at", table_name="events")
    op.drop_table("events")
