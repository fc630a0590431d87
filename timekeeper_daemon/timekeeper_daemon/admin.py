"""
Administrator operations on timers: create, update, delete, bonus time,
plus the admin views of all timers and of the audit log.
"""

from typing import TYPE_CHECKING, List, Optional

from timekeeper_daemon.logging import get_logger
from timekeeper_daemon.models import Category, LogAction
from timekeeper_daemon.results import (
    NOT_ADMIN,
    TIMER_NOT_FOUND,
    Failure,
    PersistenceError,
    TimerResult,
    guarded,
)
from timekeeper_daemon.sessions import (
    AuditEntry,
    SessionRecord,
    SessionStateMachine,
    TimerView,
    Transition,
)

if TYPE_CHECKING:
    from timekeeper_daemon.clock import Clock
    from timekeeper_daemon.storage import Storage

logger = get_logger("AdminOverride")


def _is_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_timer_fields(name, category, weekday_minutes, weekend_minutes):
    """
    Checks admin input for a timer.

    Returns:
        tuple: (cleaned name, Category) on success, or (None, error message)
    """
    name = (name or "").strip() if isinstance(name, str) else ""
    if not name:
        return None, "Timer name required"
    try:
        parsed = Category.parse(category)
    except ValueError:
        return None, "Invalid category"
    if not _is_count(weekday_minutes) or weekday_minutes < 0:
        return None, "Invalid weekday minutes"
    if not _is_count(weekend_minutes) or weekend_minutes < 0:
        return None, "Invalid weekend minutes"
    return name, parsed


class AdminOverride:
    """
    Quota and configuration changes made by an administrator. A change that
    reduces a limit below today's usage stops the running session at once
    instead of waiting for the next sweep.
    """

    def __init__(self, storage: "Storage", clock: "Clock", sessions: SessionStateMachine):
        self.storage = storage
        self.clock = clock
        self.sessions = sessions

    def _audit(self, timer_id, admin_id, action, details) -> AuditEntry:
        return AuditEntry(
            timer_id=timer_id,
            actor_id=admin_id,
            action=action,
            details=details,
            created_at=self.clock.now().replace(tzinfo=None),
        )

    async def _require_admin(self, admin_id) -> Optional[TimerResult]:
        if await self.storage.is_admin(admin_id):
            return None
        logger.debug(f"User {admin_id} is not an administrator")
        return TimerResult.fail(Failure.PERMISSION_DENIED, NOT_ADMIN)

    @guarded
    async def create_timer(
        self, admin_id, user_id, name, category, weekday_minutes, weekend_minutes
    ) -> TimerResult:
        denied = await self._require_admin(admin_id)
        if denied:
            return denied
        name, category = validate_timer_fields(
            name, category, weekday_minutes, weekend_minutes
        )
        if name is None:
            return TimerResult.fail(Failure.INVALID_ARGUMENT, category)
        if await self.storage.get_user(user_id) is None:
            return TimerResult.fail(Failure.NOT_FOUND, "user not found")

        timer_id = await self.storage.insert_timer(
            user_id=user_id,
            name=name,
            category=category.value,
            weekday_minutes=weekday_minutes,
            weekend_minutes=weekend_minutes,
            created_by=admin_id,
            audit=lambda new_id: self._audit(
                new_id,
                admin_id,
                LogAction.CREATED,
                f"Timer '{name}' created for user {user_id}",
            ),
        )
        logger.info(f"Timer {timer_id} '{name}' created for user {user_id} by {admin_id}")
        return TimerResult.success(f"Timer '{name}' created", timer_id=timer_id)

    @guarded
    async def update_timer(
        self, admin_id, timer_id, name, category, weekday_minutes, weekend_minutes
    ) -> TimerResult:
        """
        Renames, re-categorizes or changes the limits of a timer. Today's
        running session is cut off when it already uses the new limit.
        """
        denied = await self._require_admin(admin_id)
        if denied:
            return denied
        name, category = validate_timer_fields(
            name, category, weekday_minutes, weekend_minutes
        )
        if name is None:
            return TimerResult.fail(Failure.INVALID_ARGUMENT, category)

        def _update(timer):
            if timer is None:
                return Transition(outcome=TimerResult.fail(Failure.NOT_FOUND, TIMER_NOT_FOUND))
            old_wd, old_we = timer.weekday_minutes, timer.weekend_minutes
            timer.name = name
            timer.category = category.value
            timer.weekday_minutes = weekday_minutes
            timer.weekend_minutes = weekend_minutes
            details = (
                f"Timer updated. Weekday: {old_wd}m -> {weekday_minutes}m, "
                f"Weekend: {old_we}m -> {weekend_minutes}m"
            )
            return Transition(
                outcome=TimerResult.success("Timer updated"),
                audit=self._audit(timer_id, admin_id, LogAction.MODIFIED, details),
            )

        result = await self.storage.mutate_timer(timer_id, _update)
        if not result.ok:
            return result

        # The update is committed; a failed cut-off is left to the next sweep
        try:
            cut_off = await self.sessions.enforce_limit(timer_id)
        except PersistenceError as e:
            logger.warning(f"Timer {timer_id} updated but the limit was not enforced yet: {e}")
            result.data["cut_off"] = None
            result.reason = "Timer updated; the new limit applies from the next sweep"
            return result
        result.data["cut_off"] = cut_off
        if cut_off:
            result.reason = "Timer updated; running session stopped at the new limit"
        return result

    @guarded
    async def delete_timer(self, admin_id, timer_id) -> TimerResult:
        """Soft delete. Sessions of the timer are left as they are."""
        denied = await self._require_admin(admin_id)
        if denied:
            return denied

        def _delete(timer):
            if timer is None or not timer.is_active:
                return Transition(outcome=TimerResult.fail(Failure.NOT_FOUND, TIMER_NOT_FOUND))
            timer.is_active = False
            return Transition(
                outcome=TimerResult.success("Timer deleted"),
                audit=self._audit(timer_id, admin_id, LogAction.DELETED, "Timer deactivated"),
            )

        result = await self.storage.mutate_timer(timer_id, _delete)
        if result.ok:
            logger.info(f"Timer {timer_id} deactivated by {admin_id}")
        return result

    @guarded
    async def grant_bonus(self, admin_id, timer_id, minutes) -> TimerResult:
        """
        Adds bonus minutes to today's quota of a timer. Bonus is additive and
        recomputed live, so an expired session can be started again at once.
        """
        denied = await self._require_admin(admin_id)
        if denied:
            return denied
        if not _is_count(minutes) or minutes <= 0:
            return TimerResult.fail(Failure.INVALID_ARGUMENT, "Invalid bonus minutes")

        def _grant(timer, record: Optional[SessionRecord]):
            if timer is None or record is None:
                return Transition(outcome=TimerResult.fail(Failure.NOT_FOUND, TIMER_NOT_FOUND))
            record.bonus_seconds += minutes * 60
            return Transition(
                record=record,
                outcome=TimerResult.success(
                    f"{minutes} minutes added", bonus_seconds=record.bonus_seconds
                ),
                audit=self._audit(
                    timer_id, admin_id, LogAction.BONUS_GRANTED, f"{minutes} minutes added"
                ),
            )

        result = await self.storage.mutate_session(timer_id, self.clock.today(), _grant)
        if result.ok:
            logger.info(f"Granted {minutes} bonus minutes on timer {timer_id} by {admin_id}")
        return result

    async def list_timers(self, user_id: Optional[int] = None) -> List[TimerView]:
        """
        All active timers (or those of one user) with today's figures.
        Read only; no sessions are created.
        """
        today = self.clock.today()
        now = self.clock.timestamp()
        views = []
        for timer, record, username in await self.storage.active_timers_with_sessions(
            today, user_id
        ):
            if record is None:
                record = SessionRecord(timer_id=timer.id, session_date=today)
            views.append(TimerView.build(timer, record, now, username=username))
        return views

    async def timer_logs(self, timer_id: int, limit: int = 50) -> List[dict]:
        return await self.storage.get_timer_logs(timer_id, limit)
