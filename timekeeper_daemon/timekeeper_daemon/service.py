"""
TimerService: the operations the IPC layer (or any other thin front end)
calls. Wires storage, clock, notifier, state machine, sweep and admin
override together from the configuration.
"""

from typing import List, Optional

from timekeeper_daemon.admin import AdminOverride
from timekeeper_daemon.clock import DEFAULT_TIMEZONE, Clock
from timekeeper_daemon.logging import get_logger
from timekeeper_daemon.maintenance import DEFAULT_WARNING_SECONDS, MaintenanceSweep, SweepReport
from timekeeper_daemon.notifier import Notifier, create_notifier
from timekeeper_daemon.results import TimerResult
from timekeeper_daemon.sessions import SessionStateMachine, TimerView
from timekeeper_daemon.storage import Storage

logger = get_logger("TimerService")


class TimerService:
    """
    Public timer operations.

    Mutating operations always return a TimerResult. Reads raise
    PersistenceError when storage is unavailable.
    """

    def __init__(
        self,
        storage: Storage,
        clock: Clock,
        notifier: Notifier,
        warning_seconds: int = DEFAULT_WARNING_SECONDS,
        signature: str = "Timekeeper",
    ):
        self.storage = storage
        self.clock = clock
        self.notifier = notifier
        self.sessions = SessionStateMachine(storage, clock)
        self.sweep = MaintenanceSweep(
            storage, notifier, clock, warning_seconds=warning_seconds, signature=signature
        )
        self.admin = AdminOverride(storage, clock, self.sessions)

    @classmethod
    def from_config(cls, config, storage: Optional[Storage] = None) -> "TimerService":
        storage = storage or Storage.from_config(config)
        storage.sync_users(config)
        notifications = config.get("notifications", {})
        clock = Clock(config.get("timezone", DEFAULT_TIMEZONE))
        logger.info(f"Household timezone: {clock.tz.key}")
        return cls(
            storage,
            clock,
            create_notifier(config, storage),
            warning_seconds=notifications.get("warning_seconds", DEFAULT_WARNING_SECONDS),
            signature=notifications.get("signature", "Timekeeper"),
        )

    # User operations

    async def start_timer(self, timer_id: int, user_id: int) -> TimerResult:
        return await self.sessions.start(timer_id, user_id)

    async def stop_timer(self, timer_id: int, user_id: int) -> TimerResult:
        return await self.sessions.stop(timer_id, user_id)

    async def toggle_pause(self, timer_id: int, user_id: int) -> TimerResult:
        return await self.sessions.toggle_pause(timer_id, user_id)

    async def get_user_timers(self, user_id: int) -> List[TimerView]:
        return await self.sessions.user_timers(user_id)

    # Scheduler

    async def run_maintenance_sweep(self) -> SweepReport:
        return await self.sweep.run()

    # Administrator operations

    async def create_timer(
        self, admin_id, user_id, name, category, weekday_minutes, weekend_minutes
    ) -> TimerResult:
        return await self.admin.create_timer(
            admin_id, user_id, name, category, weekday_minutes, weekend_minutes
        )

    async def update_timer(
        self, admin_id, timer_id, name, category, weekday_minutes, weekend_minutes
    ) -> TimerResult:
        return await self.admin.update_timer(
            admin_id, timer_id, name, category, weekday_minutes, weekend_minutes
        )

    async def delete_timer(self, admin_id, timer_id) -> TimerResult:
        return await self.admin.delete_timer(admin_id, timer_id)

    async def grant_bonus(self, admin_id, timer_id, minutes) -> TimerResult:
        return await self.admin.grant_bonus(admin_id, timer_id, minutes)

    async def list_timers(self, user_id: Optional[int] = None) -> List[TimerView]:
        return await self.admin.list_timers(user_id)

    async def timer_logs(self, timer_id: int, limit: int = 50) -> List[dict]:
        return await self.admin.timer_logs(timer_id, limit)

    def close(self):
        self.storage.close()
