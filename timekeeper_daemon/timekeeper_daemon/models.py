"""
SQLAlchemy models for timekeeper_daemon.

Key design decisions:
- One timer_sessions row per (timer_id, session_date); rows are created lazily
- status is a single column (idle/running/paused) so running and paused can
  never both be set; started_at/paused_at are tied to it by CHECK constraints
- timer_sessions.version is the optimistic-lock counter used by Storage
- timer_logs is append-only
"""

import enum
from datetime import date as date_type
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Category(str, enum.Enum):
    """Device category of a timer."""

    COMPUTER = "Computer"
    PHONE = "Phone"
    TABLET = "Tablet"
    GAMING_CONSOLE = "Gaming Console"
    TV = "TV"

    @classmethod
    def parse(cls, value) -> "Category":
        """Accepts a member, its value ("Gaming Console") or its name ("GAMING_CONSOLE")."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid category: {value!r}")
        text = value.strip()
        for member in cls:
            if text == member.value or text.upper().replace(" ", "_") == member.name:
                return member
        raise ValueError(f"Invalid category: {value!r}")


class LogAction(str, enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    BONUS_GRANTED = "bonus_granted"
    START_BLOCKED = "start_blocked"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """A household member. Synchronised from the configuration."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username}, is_admin={self.is_admin})>"


class Timer(Base):
    """
    A named daily screen-time quota for one user and device category.

    Timers are soft-deleted (is_active = False) so the audit log keeps
    pointing at a real row.
    """

    __tablename__ = "timers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    weekday_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weekend_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.current_timestamp()
    )

    __table_args__ = (
        CheckConstraint("weekday_minutes >= 0", name="ck_timer_weekday_nonneg"),
        CheckConstraint("weekend_minutes >= 0", name="ck_timer_weekend_nonneg"),
    )

    def __repr__(self) -> str:
        return (
            f"<Timer(id={self.id}, user_id={self.user_id}, name={self.name}, "
            f"category={self.category}, active={self.is_active})>"
        )


class TimerSession(Base):
    """
    Usage of one timer on one calendar date (household timezone).

    Note: started_at and paused_at are EPOCH seconds, not local datetimes,
    so the elapsed delta survives daemon restarts and DST changes.
    """

    __tablename__ = "timer_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("timers.id"), nullable=False
    )
    session_date: Mapped[date_type] = mapped_column(Date, nullable=False, index=True)

    elapsed_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonus_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="idle")
    started_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    paused_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    warning_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expired_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stop_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("timer_id", "session_date", name="uq_timer_session_date"),
        Index("idx_session_date_status", "session_date", "status"),
        CheckConstraint(
            "status IN ('idle', 'running', 'paused')", name="ck_session_status"
        ),
        CheckConstraint(
            "(status = 'running') = (started_at IS NOT NULL)",
            name="ck_session_started_at",
        ),
        CheckConstraint(
            "(status = 'paused') = (paused_at IS NOT NULL)",
            name="ck_session_paused_at",
        ),
        CheckConstraint("elapsed_seconds >= 0", name="ck_session_elapsed_nonneg"),
    )

    def __repr__(self) -> str:
        return (
            f"<TimerSession(timer_id={self.timer_id}, date={self.session_date}, "
            f"status={self.status}, elapsed={self.elapsed_seconds})>"
        )


class TimerLog(Base):
    """Audit trail of administrative and enforcement events."""

    __tablename__ = "timer_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("timers.id"), nullable=False, index=True
    )
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<TimerLog(timer_id={self.timer_id}, actor_id={self.actor_id}, "
            f"action={self.action})>"
        )
