"""Initial schema: users, timers, per-day timer sessions and the audit log

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial tables."""

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "timers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("weekday_minutes", sa.Integer(), nullable=False),
        sa.Column("weekend_minutes", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("weekday_minutes >= 0", name="ck_timer_weekday_nonneg"),
        sa.CheckConstraint("weekend_minutes >= 0", name="ck_timer_weekend_nonneg"),
    )
    op.create_index(op.f("ix_timers_user_id"), "timers", ["user_id"], unique=False)

    # One row per timer and date; version is the optimistic-lock counter
    op.create_table(
        "timer_sessions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timer_id", sa.Integer(), nullable=False),
        sa.Column("session_date", sa.Date(), nullable=False),
        sa.Column("elapsed_seconds", sa.Integer(), nullable=False),
        sa.Column("bonus_seconds", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.Float(), nullable=True),
        sa.Column("paused_at", sa.Float(), nullable=True),
        sa.Column("warning_sent", sa.Boolean(), nullable=False),
        sa.Column("expired_sent", sa.Boolean(), nullable=False),
        sa.Column("stop_reason", sa.String(length=32), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["timer_id"], ["timers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("timer_id", "session_date", name="uq_timer_session_date"),
        sa.CheckConstraint(
            "status IN ('idle', 'running', 'paused')", name="ck_session_status"
        ),
        sa.CheckConstraint(
            "(status = 'running') = (started_at IS NOT NULL)",
            name="ck_session_started_at",
        ),
        sa.CheckConstraint(
            "(status = 'paused') = (paused_at IS NOT NULL)",
            name="ck_session_paused_at",
        ),
        sa.CheckConstraint("elapsed_seconds >= 0", name="ck_session_elapsed_nonneg"),
    )
    op.create_index(
        op.f("ix_timer_sessions_session_date"),
        "timer_sessions",
        ["session_date"],
        unique=False,
    )
    op.create_index(
        "idx_session_date_status", "timer_sessions", ["session_date", "status"]
    )

    # Append-only audit trail
    op.create_table(
        "timer_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timer_id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["timer_id"], ["timers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_timer_logs_timer_id"), "timer_logs", ["timer_id"], unique=False
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index(op.f("ix_timer_logs_timer_id"), table_name="timer_logs")
    op.drop_table("timer_logs")
    op.drop_index("idx_session_date_status", table_name="timer_sessions")
    op.drop_index(op.f("ix_timer_sessions_session_date"), table_name="timer_sessions")
    op.drop_table("timer_sessions")
    op.drop_index(op.f("ix_timers_user_id"), table_name="timers")
    op.drop_table("timers")
    op.drop_table("users")
