"""
Per-day timer sessions and the start/stop/pause state machine.

A session is in exactly one of three stored states: Idle, Running(started_at)
or Paused(paused_at). "Expired" is derived (elapsed >= effective limit).
Every operation runs as one read-modify-write unit through
Storage.mutate_session, so a stop click racing a maintenance sweep always
sees the other writer's started_at/elapsed_seconds before computing its delta.
"""

import dataclasses
import datetime
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List, Optional, Union

from timekeeper_daemon import quota
from timekeeper_daemon.logging import get_logger
from timekeeper_daemon.models import LogAction
from timekeeper_daemon.results import (
    NOT_OWNER,
    NOT_RUNNING,
    PAUSED,
    TIME_EXPIRED,
    TIMER_NOT_FOUND,
    Failure,
    TimerResult,
    guarded,
)

if TYPE_CHECKING:
    from timekeeper_daemon.clock import Clock
    from timekeeper_daemon.storage import Storage

logger = get_logger("SessionStateMachine")


@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Running:
    started_at: float
    name = "running"


@dataclass(frozen=True)
class Paused:
    paused_at: float
    name = "paused"


IDLE = Idle()
SessionStatus = Union[Idle, Running, Paused]

# Why a session last stopped; shown to the owner on the next status poll
STOP_USER = "user"
STOP_PAUSED = "paused"
STOP_EXPIRED = "expired"
STOP_QUOTA_REDUCED = "quota_reduced"

STOP_NOTICES = {
    STOP_EXPIRED: "Stopped: daily time is used up.",
    STOP_QUOTA_REDUCED: "Stopped: the daily limit was reduced.",
}


@dataclass
class SessionRecord:
    """Usage of one timer on one date, as read from and written to Storage."""

    timer_id: int
    session_date: datetime.date
    elapsed_seconds: int = 0
    bonus_seconds: int = 0
    status: SessionStatus = IDLE
    warning_sent: bool = False
    expired_sent: bool = False
    stop_reason: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return isinstance(self.status, Running)

    @property
    def is_paused(self) -> bool:
        return isinstance(self.status, Paused)

    @property
    def started_at(self) -> Optional[float]:
        return self.status.started_at if self.is_running else None

    def limit_seconds(self, timer) -> int:
        return quota.effective_limit_seconds(timer, self.session_date, self.bonus_seconds)

    def remaining_seconds(self, timer) -> int:
        return quota.remaining_seconds(self.limit_seconds(timer), self.elapsed_seconds)

    def is_expired(self, timer) -> bool:
        return self.remaining_seconds(timer) <= 0

    def pending_seconds(self, now: float) -> int:
        """Whole seconds run since started_at that are not yet in elapsed_seconds."""
        if not self.is_running:
            return 0
        return max(0, int(now - self.status.started_at))

    def accrue(self, now: float) -> int:
        """
        Moves the whole seconds run since started_at into elapsed_seconds.

        started_at advances by exactly the seconds accrued, so the fraction
        of a second left over is counted by the next accrual and repeated
        sweeps or polls never count the same interval twice. A clock that
        stepped backwards restarts the interval at now.
        """
        if not self.is_running:
            return 0
        delta = int(now - self.status.started_at)
        if delta < 0:
            self.status = Running(started_at=now)
            return 0
        self.elapsed_seconds += delta
        self.status = Running(started_at=self.status.started_at + delta)
        return delta

    def stop(self, now: float, reason: str) -> int:
        delta = self.accrue(now)
        self.status = IDLE
        self.stop_reason = reason
        return delta


@dataclass
class AuditEntry:
    timer_id: int
    actor_id: int
    action: LogAction
    details: str
    created_at: datetime.datetime


@dataclass
class Transition:
    """
    What a unit of work decided.

    Attributes:
        record: session state to write back, None to leave the row as is
        outcome: returned to the caller of Storage.mutate_session
        audit: audit entry appended in the same transaction
    """

    record: Optional[SessionRecord] = None
    outcome: Any = None
    audit: Optional[AuditEntry] = None


@dataclass
class TimerView:
    """A timer with today's figures, as shown on the dashboard."""

    id: int
    user_id: int
    name: str
    category: str
    weekday_minutes: int
    weekend_minutes: int
    session_date: datetime.date
    limit_seconds: int
    elapsed_seconds: int
    bonus_seconds: int
    remaining_seconds: int
    status_color: str
    is_running: bool
    is_paused: bool
    warning_sent: bool
    expired_sent: bool
    stop_reason: Optional[str] = None
    notice: Optional[str] = None
    username: Optional[str] = None

    @classmethod
    def build(cls, timer, record: SessionRecord, now: float, username=None) -> "TimerView":
        """
        Builds the view from a timer and today's record (which may be a
        blank record when no session exists yet). Time run since the last
        accrual is included without being written.
        """
        elapsed = record.elapsed_seconds + record.pending_seconds(now)
        limit = record.limit_seconds(timer)
        return cls(
            id=timer.id,
            user_id=timer.user_id,
            name=timer.name,
            category=timer.category,
            weekday_minutes=timer.weekday_minutes,
            weekend_minutes=timer.weekend_minutes,
            session_date=record.session_date,
            limit_seconds=limit,
            elapsed_seconds=elapsed,
            bonus_seconds=record.bonus_seconds,
            remaining_seconds=quota.display_remaining(limit, elapsed),
            status_color=quota.status_color(limit, elapsed),
            is_running=record.is_running,
            is_paused=record.is_paused,
            warning_sent=record.warning_sent,
            expired_sent=record.expired_sent,
            stop_reason=record.stop_reason,
            notice=STOP_NOTICES.get(record.stop_reason),
            username=username,
        )

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data["session_date"] = self.session_date.isoformat()
        return data


def owner_check(timer, user_id) -> Optional[TimerResult]:
    """Failure result when the timer is unusable by this user, else None."""
    if timer is None or not timer.is_active:
        return TimerResult.fail(Failure.NOT_FOUND, TIMER_NOT_FOUND)
    if timer.user_id != user_id:
        logger.debug(f"User {user_id} is not the owner of timer {timer.id}")
        return TimerResult.fail(Failure.PERMISSION_DENIED, NOT_OWNER)
    return None


class SessionStateMachine:
    """
    Start/stop/pause transitions and elapsed-time accrual for today's sessions.
    """

    def __init__(self, storage: "Storage", clock: "Clock"):
        self.storage = storage
        self.clock = clock

    def _audit(self, timer_id, actor_id, action, details) -> AuditEntry:
        return AuditEntry(
            timer_id=timer_id,
            actor_id=actor_id,
            action=action,
            details=details,
            created_at=self.clock.now().replace(tzinfo=None),
        )

    def _blocked(self, timer, record: SessionRecord, user_id) -> AuditEntry:
        remaining = record.remaining_seconds(timer)
        logger.info(
            f"Start of timer {timer.id} blocked for user {user_id}: time expired "
            f"(elapsed={record.elapsed_seconds}s, remaining={remaining}s)"
        )
        return self._audit(
            timer.id,
            user_id,
            LogAction.START_BLOCKED,
            f"Start blocked: Time expired (elapsed: {int(record.elapsed_seconds / 60)}m, "
            f"remaining: {int(remaining / 60)}m)",
        )

    @guarded
    async def start(self, timer_id: int, user_id: int) -> TimerResult:
        """
        Starts today's session of a timer.

        Blocked (and audit-logged) when the quota is used up; refused when
        the session is paused, since resuming goes through toggle_pause.
        Starting a running session is a no-op success.
        """

        def _start(timer, record):
            failure = owner_check(timer, user_id)
            if failure:
                return Transition(outcome=failure)
            if record.is_running:
                return Transition(outcome=TimerResult.success("already running"))
            if record.is_expired(timer):
                return Transition(
                    outcome=TimerResult.fail(Failure.INVALID_TRANSITION, TIME_EXPIRED),
                    audit=self._blocked(timer, record, user_id),
                )
            if record.is_paused:
                return Transition(
                    outcome=TimerResult.fail(Failure.INVALID_TRANSITION, PAUSED)
                )
            record.status = Running(started_at=self.clock.timestamp())
            record.stop_reason = None
            return Transition(record=record, outcome=TimerResult.success("timer started"))

        return await self.storage.mutate_session(timer_id, self.clock.today(), _start)

    @guarded
    async def stop(self, timer_id: int, user_id: int) -> TimerResult:
        """
        Stops a running session and adds the wall-clock time since
        started_at to elapsed_seconds.
        """

        def _stop(timer, record):
            failure = owner_check(timer, user_id)
            if failure:
                return Transition(outcome=failure)
            if record is None or not record.is_running:
                return Transition(
                    outcome=TimerResult.fail(Failure.INVALID_TRANSITION, NOT_RUNNING)
                )
            record.stop(self.clock.timestamp(), STOP_USER)
            return Transition(
                record=record,
                outcome=TimerResult.success(
                    "timer stopped", elapsed_seconds=record.elapsed_seconds
                ),
            )

        return await self.storage.mutate_session(
            timer_id, self.clock.today(), _stop, create=False
        )

    @guarded
    async def toggle_pause(self, timer_id: int, user_id: int) -> TimerResult:
        """
        Paused -> running again at once; running -> accrue, then paused;
        idle -> paused. A paused session whose time ran out in the meantime
        (e.g. the limit was reduced) is unpaused to idle instead of running.
        """

        def _toggle(timer, record):
            failure = owner_check(timer, user_id)
            if failure:
                return Transition(outcome=failure)
            now = self.clock.timestamp()

            if record.is_paused:
                if record.is_expired(timer):
                    record.status = IDLE
                    result = TimerResult.fail(Failure.INVALID_TRANSITION, TIME_EXPIRED)
                    result.now_paused = False
                    return Transition(
                        record=record,
                        outcome=result,
                        audit=self._blocked(timer, record, user_id),
                    )
                record.status = Running(started_at=now)
                record.stop_reason = None
                result = TimerResult.success("timer resumed")
                result.now_paused = False
                return Transition(record=record, outcome=result)

            if record.is_running:
                record.stop(now, STOP_PAUSED)
            record.status = Paused(paused_at=now)
            result = TimerResult.success("timer paused")
            result.now_paused = True
            return Transition(record=record, outcome=result)

        return await self.storage.mutate_session(timer_id, self.clock.today(), _toggle)

    async def poll(self, timer_id: int) -> Optional[TimerView]:
        """
        Status poll of one timer: get-or-create today's session, persist the
        time run since the last accrual and return the view. None when the
        timer does not exist or is inactive.
        """

        def _poll(timer, record):
            if timer is None or record is None or not timer.is_active:
                return Transition()
            now = self.clock.timestamp()
            record.accrue(now)
            return Transition(record=record, outcome=TimerView.build(timer, record, now))

        return await self.storage.mutate_session(timer_id, self.clock.today(), _poll)

    async def user_timers(self, user_id: int) -> List[TimerView]:
        """
        Active timers of a user with today's figures, ordered by category and
        name. Raises PersistenceError when storage is unavailable.
        """
        views = []
        for timer in await self.storage.timers_for_user(user_id):
            view = await self.poll(timer.id)
            if view is not None:
                views.append(view)
        return views

    async def enforce_limit(self, timer_id: int) -> bool:
        """
        Force-stops today's running session when its elapsed time already
        reaches the current effective limit. Used right after a quota change.

        Returns:
            bool: True when the session was cut off.
        """

        def _enforce(timer, record):
            if timer is None or record is None or not record.is_running:
                return Transition(outcome=False)
            now = self.clock.timestamp()
            record.accrue(now)
            if record.elapsed_seconds < record.limit_seconds(timer):
                return Transition(record=record, outcome=False)
            record.stop(now, STOP_QUOTA_REDUCED)
            logger.info(
                f"Timer {timer.id} cut off after limit change "
                f"(elapsed={record.elapsed_seconds}s, limit={record.limit_seconds(timer)}s)"
            )
            return Transition(record=record, outcome=True)

        return await self.storage.mutate_session(
            timer_id, self.clock.today(), _enforce, create=False
        )
