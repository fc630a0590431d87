"""
Central SQLAlchemy interface for timekeeper-daemon.
Provides the persistence operations of the timer core using SQLAlchemy ORM.
"""

import asyncio
import datetime
import os
import time
from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_, create_engine, delete, or_, select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import NullPool

from timekeeper_daemon.logging import get_logger
from timekeeper_daemon.models import Timer, TimerLog, TimerSession, User
from timekeeper_daemon.results import PersistenceError
from timekeeper_daemon.sessions import (
    IDLE,
    AuditEntry,
    Paused,
    Running,
    SessionRecord,
    Transition,
)

logger = get_logger("Storage")

# Seconds; multiplied by the attempt number
RETRY_BACKOFF = 0.05

# Errors after which a unit of work is rolled back and run again:
# a concurrent writer bumped the row version, SQLite was locked or busy,
# or a concurrent get-or-create inserted the same (timer_id, date) first.
RETRYABLE_ERRORS = (StaleDataError, OperationalError, IntegrityError)


def row_to_record(row: TimerSession) -> SessionRecord:
    if row.status == "running":
        status = Running(started_at=row.started_at)
    elif row.status == "paused":
        status = Paused(paused_at=row.paused_at)
    else:
        status = IDLE
    return SessionRecord(
        timer_id=row.timer_id,
        session_date=row.session_date,
        elapsed_seconds=row.elapsed_seconds,
        bonus_seconds=row.bonus_seconds,
        status=status,
        warning_sent=row.warning_sent,
        expired_sent=row.expired_sent,
        stop_reason=row.stop_reason,
    )


def record_to_row(record: SessionRecord, row: TimerSession):
    row.elapsed_seconds = record.elapsed_seconds
    row.bonus_seconds = record.bonus_seconds
    row.status = record.status.name
    row.started_at = record.status.started_at if record.is_running else None
    row.paused_at = record.status.paused_at if record.is_paused else None
    row.warning_sent = record.warning_sent
    row.expired_sent = record.expired_sent
    row.stop_reason = record.stop_reason


def new_session_row(timer_id: int, day: datetime.date) -> TimerSession:
    return TimerSession(
        timer_id=timer_id,
        session_date=day,
        elapsed_seconds=0,
        bonus_seconds=0,
        status="idle",
        warning_sent=False,
        expired_sent=False,
    )


class Storage:
    """
    Central SQLAlchemy interface for timers, sessions, users and the audit log.

    Key design points:
    - Every mutation is one transaction ("unit of work") that re-reads the
      rows it changes; nothing is cached between calls
    - timer_sessions rows carry a version counter; a unit that lost a race is
      rolled back and re-run against the fresh row
    - Async methods run their blocking work in a worker thread
    """

    def __init__(self, db_path: str, db_timeout: float = 30, write_retries: int = 5):
        """
        Initialize the Storage with the given database path.

        Args:
            db_path (str): Path to SQLite database.
            db_timeout (float): Seconds to wait for a database lock.
            write_retries (int): Attempts per unit of work before giving up.
        """
        self.db_path = db_path
        self.db_timeout = db_timeout
        self.write_retries = write_retries
        logger.info(f"Opening SQLite database at {self.db_path}")

        parent_dir = os.path.dirname(self.db_path)
        if parent_dir and not os.path.exists(parent_dir):
            os.makedirs(parent_dir)

        self.engine = None
        self.SessionLocal = None
        self._init_db()

    @classmethod
    def from_config(cls, config) -> "Storage":
        storage_cfg = config.get("storage", {})
        return cls(
            config.get("db_path"),
            db_timeout=storage_cfg.get("db_timeout", 30),
            write_retries=storage_cfg.get("write_retries", 5),
        )

    def _create_engine(self):
        # NullPool: one connection per unit of work, safe with asyncio.to_thread()
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            poolclass=NullPool,
            connect_args={
                "check_same_thread": False,
                "timeout": self.db_timeout,
            },
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def _init_db(self):
        """
        Initialize the SQLite database schema using Alembic migrations and
        set the SQLite pragmas.
        """
        try:
            from alembic import command
            from alembic.config import Config as AlembicConfig

            daemon_dir = os.path.dirname(os.path.dirname(__file__))
            alembic_cfg = AlembicConfig(os.path.join(daemon_dir, "alembic.ini"))
            alembic_cfg.set_main_option("script_location", os.path.join(daemon_dir, "alembic"))
            alembic_cfg.attributes["db_url"] = f"sqlite:///{self.db_path}"

            command.upgrade(alembic_cfg, "head")
            logger.info("Database migrations completed successfully")

            self._create_engine()
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA foreign_keys=ON"))
                conn.commit()

            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"DB error during database initialization: {e}")
            raise

    def _run_unit(self, name: str, work: Callable):
        """
        Runs work(db_session) in one transaction, retrying the whole unit on
        write conflicts and lock timeouts.

        Raises:
            PersistenceError: when every attempt failed
        """
        last_error = None
        for attempt in range(1, self.write_retries + 1):
            try:
                with self.SessionLocal() as db:
                    with db.begin():
                        return work(db)
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.debug(
                    f"{name}: attempt {attempt}/{self.write_retries} failed "
                    f"({type(e).__name__}), retrying"
                )
                time.sleep(RETRY_BACKOFF * attempt)
        logger.warning(f"{name} failed after {self.write_retries} attempts: {last_error}")
        raise PersistenceError(f"{name} failed: {last_error}") from last_error

    @staticmethod
    def _add_audit(db, audit: Optional[AuditEntry]):
        if audit is None:
            return
        db.add(
            TimerLog(
                timer_id=audit.timer_id,
                actor_id=audit.actor_id,
                action=audit.action.value,
                details=audit.details,
                created_at=audit.created_at,
            )
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def sync_users(self, config):
        """
        Synchronize the ``users`` section of the configuration to the database.
        Users are inserted or updated by username and never deleted, so timer
        ownership stays valid when someone is removed from the config.
        """
        users = config.get("users") or {}
        logger.info(f"Synchronizing {len(users)} users to database")

        def _sync(db):
            for username, user_cfg in users.items():
                user = db.execute(
                    select(User).where(User.username == username)
                ).scalar_one_or_none()
                if user is None:
                    user = User(username=username)
                    db.add(user)
                user.email = user_cfg.get("email")
                user.is_admin = bool(user_cfg.get("is_admin", False))

        self._run_unit("sync_users", _sync)

    def add_user(self, username: str, email: Optional[str] = None, is_admin: bool = False) -> int:
        """Adds a user and returns its id."""

        def _add(db):
            user = User(username=username, email=email, is_admin=is_admin)
            db.add(user)
            db.flush()
            return user.id

        return self._run_unit("add_user", _add)

    async def get_user(self, user_id: int) -> Optional[User]:
        def _get(db):
            return db.get(User, user_id)

        return await asyncio.to_thread(self._run_unit, "get_user", _get)

    async def is_admin(self, user_id: int) -> bool:
        user = await self.get_user(user_id)
        return bool(user and user.is_admin)

    async def get_admin_ids(self) -> List[int]:
        def _get(db):
            return list(
                db.execute(
                    select(User.id).where(User.is_admin.is_(True)).order_by(User.id)
                ).scalars()
            )

        return await asyncio.to_thread(self._run_unit, "get_admin_ids", _get)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def get_timer(self, timer_id: int) -> Optional[Timer]:
        """Returns the timer row (detached) or None."""
        return self._run_unit("get_timer", lambda db: db.get(Timer, timer_id))

    async def timers_for_user(self, user_id: int) -> List[Timer]:
        """Active timers of one user, ordered by category and name."""

        def _get(db):
            return list(
                db.execute(
                    select(Timer)
                    .where(and_(Timer.user_id == user_id, Timer.is_active.is_(True)))
                    .order_by(Timer.category, Timer.name)
                ).scalars()
            )

        return await asyncio.to_thread(self._run_unit, "timers_for_user", _get)

    async def active_timers_with_sessions(
        self, day: datetime.date, user_id: Optional[int] = None
    ) -> List[Tuple[Timer, Optional[SessionRecord], str]]:
        """
        Active timers (optionally of one user) with today's session, if any,
        and the owner's username. Read only: no session is created.
        """

        def _get(db):
            query = (
                select(Timer, TimerSession, User.username)
                .join(User, Timer.user_id == User.id)
                .outerjoin(
                    TimerSession,
                    and_(
                        TimerSession.timer_id == Timer.id,
                        TimerSession.session_date == day,
                    ),
                )
                .where(Timer.is_active.is_(True))
                .order_by(User.username, Timer.category, Timer.name)
            )
            if user_id is not None:
                query = query.where(Timer.user_id == user_id)
            return [
                (timer, row_to_record(row) if row is not None else None, username)
                for timer, row, username in db.execute(query).all()
            ]

        return await asyncio.to_thread(self._run_unit, "active_timers", _get)

    async def insert_timer(
        self,
        user_id: int,
        name: str,
        category: str,
        weekday_minutes: int,
        weekend_minutes: int,
        created_by: int,
        audit: Callable[[int], AuditEntry],
    ) -> int:
        """
        Inserts a timer and its creation audit entry in one transaction.

        Args:
            audit: builds the audit entry from the new timer id
        """

        def _insert(db):
            timer = Timer(
                user_id=user_id,
                name=name,
                category=category,
                weekday_minutes=weekday_minutes,
                weekend_minutes=weekend_minutes,
                is_active=True,
                created_by=created_by,
            )
            db.add(timer)
            db.flush()
            self._add_audit(db, audit(timer.id))
            return timer.id

        return await asyncio.to_thread(self._run_unit, "insert_timer", _insert)

    async def mutate_timer(self, timer_id: int, fn: Callable[[Optional[Timer]], Transition]):
        """
        Atomically read-modify-write one timer row. fn receives the attached
        row (or None) and changes it in place; the Transition's audit entry
        is appended in the same transaction and its outcome returned.
        """

        def _mutate(db):
            timer = db.execute(
                select(Timer).where(Timer.id == timer_id).with_for_update()
            ).scalar_one_or_none()
            transition = fn(timer)
            self._add_audit(db, transition.audit)
            return transition.outcome

        return await asyncio.to_thread(self._run_unit, f"mutate_timer({timer_id})", _mutate)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, timer_id: int, day: datetime.date) -> Optional[SessionRecord]:
        def _get(db):
            row = db.execute(
                select(TimerSession).where(
                    and_(TimerSession.timer_id == timer_id, TimerSession.session_date == day)
                )
            ).scalar_one_or_none()
            return row_to_record(row) if row is not None else None

        return self._run_unit("get_session", _get)

    def upsert_session(self, record: SessionRecord):
        """Writes a session record, inserting the row when it does not exist."""

        def _upsert(db):
            row = db.execute(
                select(TimerSession).where(
                    and_(
                        TimerSession.timer_id == record.timer_id,
                        TimerSession.session_date == record.session_date,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                row = new_session_row(record.timer_id, record.session_date)
                db.add(row)
            record_to_row(record, row)

        self._run_unit("upsert_session", _upsert)

    def append_log(self, entry: AuditEntry):
        self._run_unit("append_log", lambda db: self._add_audit(db, entry))

    async def mutate_session(
        self,
        timer_id: int,
        day: datetime.date,
        fn: Callable[[Optional[Timer], Optional[SessionRecord]], Transition],
        create: bool = True,
    ):
        """
        Atomically read-modify-write the session of a timer on one date.

        Loads the timer and the session (get-or-create when create is True
        and the timer is active), calls fn(timer, record) and writes back the
        Transition's record and audit entry in the same transaction. On a
        write conflict the whole unit, including fn, runs again on fresh data.

        Returns:
            The Transition's outcome.

        Raises:
            PersistenceError: when the unit could not be committed
        """

        def _mutate(db):
            timer = db.get(Timer, timer_id)
            row = db.execute(
                select(TimerSession)
                .where(
                    and_(TimerSession.timer_id == timer_id, TimerSession.session_date == day)
                )
                .with_for_update()
            ).scalar_one_or_none()

            if row is None and create and timer is not None and timer.is_active:
                row = new_session_row(timer_id, day)
                db.add(row)
                db.flush()
                logger.debug(f"Created session for timer {timer_id} on {day}")

            transition = fn(timer, row_to_record(row) if row is not None else None)

            if transition.record is not None:
                if row is None:
                    row = new_session_row(timer_id, day)
                    db.add(row)
                record_to_row(transition.record, row)
            self._add_audit(db, transition.audit)
            return transition.outcome

        return await asyncio.to_thread(
            self._run_unit, f"mutate_session({timer_id}, {day})", _mutate
        )

    async def sweep_candidates(self, day: datetime.date) -> List[int]:
        """
        Timer ids whose session on this date needs the maintenance sweep:
        running sessions, and stopped sessions with usage whose expiry notice
        has not been sent yet.
        """

        def _get(db):
            return list(
                db.execute(
                    select(TimerSession.timer_id)
                    .join(Timer, Timer.id == TimerSession.timer_id)
                    .where(
                        and_(
                            TimerSession.session_date == day,
                            Timer.is_active.is_(True),
                            or_(
                                TimerSession.status == "running",
                                and_(
                                    TimerSession.expired_sent.is_(False),
                                    TimerSession.elapsed_seconds > 0,
                                ),
                            ),
                        )
                    )
                    .order_by(TimerSession.timer_id)
                ).scalars()
            )

        return await asyncio.to_thread(self._run_unit, "sweep_candidates", _get)

    async def delete_sessions_before(self, day: datetime.date) -> int:
        """Deletes sessions dated strictly before day. Returns the row count."""

        def _delete(db):
            result = db.execute(
                delete(TimerSession).where(TimerSession.session_date < day)
            )
            return result.rowcount or 0

        return await asyncio.to_thread(self._run_unit, "delete_sessions_before", _delete)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def get_timer_logs(self, timer_id: int, limit: int = 50) -> List[dict]:
        """Audit entries of a timer, newest first, with the actor's username."""

        def _get(db):
            rows = db.execute(
                select(TimerLog, User.username)
                .outerjoin(User, TimerLog.actor_id == User.id)
                .where(TimerLog.timer_id == timer_id)
                .order_by(TimerLog.created_at.desc(), TimerLog.id.desc())
                .limit(limit)
            ).all()
            return [
                {
                    "action": log.action,
                    "details": log.details,
                    "created_at": log.created_at.isoformat(sep=" "),
                    "actor_id": log.actor_id,
                    "actor": username,
                }
                for log, username in rows
            ]

        return await asyncio.to_thread(self._run_unit, "get_timer_logs", _get)

    def close(self):
        """
        Closes the database engine.
        """
        logger.info("Closing SQLite database connection")
        if self.engine is not None:
            self.engine.dispose()
