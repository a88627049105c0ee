"""create users and activity_logs tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_login_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("password_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("password_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_ip", sa.String(length=45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_locked_until", "users", ["locked_until"])

    # user_id is deliberately not a foreign key: records outlive accounts.
    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("method", sa.String(length=10), nullable=True),
        sa.Column("path", sa.String(length=2048), nullable=True),
        sa.Column("session_id", sa.String(length=255), nullable=True),
        sa.Column("request_id", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_activity_logs_user_timestamp", "activity_logs", ["user_id", "timestamp"]
    )
    op.create_index(
        "ix_activity_logs_action_timestamp", "activity_logs", ["action", "timestamp"]
    )
    op.create_index(
        "ix_activity_logs_ip_timestamp", "activity_logs", ["ip_address", "timestamp"]
    )
    op.create_index(
        "ix_activity_logs_status_timestamp", "activity_logs", ["status", "timestamp"]
    )


def downgrade() -> None:
    op.drop_index("ix_activity_logs_status_timestamp", table_name="activity_logs")
    op.drop_index("ix_activity_logs_ip_timestamp", table_name="activity_logs")
    op.drop_index("ix_activity_logs_action_timestamp", table_name="activity_logs")
    op.drop_index("ix_activity_logs_user_timestamp", table_name="activity_logs")
    op.drop_table("activity_logs")

    op.drop_index("ix_users_locked_until", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
