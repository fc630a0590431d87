"""
Periodic maintenance sweep: retention cleanup, accrual of running sessions,
warning and expiry notices.

Each notice is claimed (its flag set) inside the session's atomic unit before
it is dispatched and released again if dispatch fails, so concurrent sweeps
never both send it and a failed delivery is retried by the next sweep.
"""

import datetime
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, List, Optional

from timekeeper_daemon.logging import get_logger
from timekeeper_daemon.results import PersistenceError
from timekeeper_daemon.sessions import STOP_EXPIRED, Transition

if TYPE_CHECKING:
    from timekeeper_daemon.clock import Clock
    from timekeeper_daemon.notifier import Notifier
    from timekeeper_daemon.storage import Storage

logger = get_logger("MaintenanceSweep")

DEFAULT_WARNING_SECONDS = 600


@dataclass
class SweepReport:
    cleaned: int = 0
    updated: int = 0
    warned: int = 0
    expired: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SweepDecision:
    """What one session's unit of work decided; notices still to be dispatched."""

    timer_id: int
    user_id: int
    name: str
    category: str
    limit_seconds: int
    elapsed_seconds: int
    remaining_seconds: int
    accrued: bool = False
    stopped: bool = False
    warn: bool = False
    expire_notice: bool = False


class MaintenanceSweep:
    """
    One reconciliation pass over today's sessions. Invoked on a fixed
    interval by the daemon, by ``timekeeperctl sweep`` or by cron.
    """

    def __init__(
        self,
        storage: "Storage",
        notifier: "Notifier",
        clock: "Clock",
        warning_seconds: int = DEFAULT_WARNING_SECONDS,
        signature: str = "Timekeeper",
    ):
        self.storage = storage
        self.notifier = notifier
        self.clock = clock
        self.warning_seconds = warning_seconds
        self.signature = signature

    async def run(self) -> SweepReport:
        """
        Runs a full pass. Failures are isolated per session and counted in
        the report's errors; the pass itself never raises.
        """
        report = SweepReport()
        today = self.clock.today()
        logger.info(f"Starting timer maintenance for {today}")

        # Retention first so nothing accrues into a row about to be purged
        try:
            report.cleaned = await self.storage.delete_sessions_before(today)
            if report.cleaned:
                logger.info(f"Cleaned up {report.cleaned} old session(s)")
        except PersistenceError as e:
            logger.error(f"Session cleanup failed: {e}")
            report.errors += 1

        try:
            candidates: List[int] = await self.storage.sweep_candidates(today)
        except PersistenceError as e:
            logger.error(f"Could not list sessions for maintenance: {e}")
            report.errors += 1
            return report

        for timer_id in candidates:
            try:
                await self._process(timer_id, today, report)
            except Exception as e:
                logger.error(
                    f"Maintenance of timer {timer_id} failed, continuing: {e}",
                    exc_info=True,
                )
                report.errors += 1

        logger.info("Timer maintenance complete", **report.to_dict())
        return report

    def _evaluate(self, timer, record) -> Transition:
        if timer is None or record is None or not timer.is_active:
            return Transition()

        now = self.clock.timestamp()
        was_running = record.is_running
        if was_running:
            record.accrue(now)

        limit = record.limit_seconds(timer)
        remaining = limit - record.elapsed_seconds
        decision = SweepDecision(
            timer_id=timer.id,
            user_id=timer.user_id,
            name=timer.name,
            category=timer.category,
            limit_seconds=limit,
            elapsed_seconds=record.elapsed_seconds,
            remaining_seconds=remaining,
            accrued=was_running,
        )

        if was_running and 0 < remaining <= self.warning_seconds and not record.warning_sent:
            record.warning_sent = True
            decision.warn = True

        used = was_running or record.elapsed_seconds > 0
        if used and record.elapsed_seconds >= limit:
            # The clock stops whether or not the notice gets delivered
            if record.is_running:
                record.stop(now, STOP_EXPIRED)
                decision.stopped = True
                logger.info(f"Timer {timer.id} expired and was stopped")
            if not record.expired_sent:
                record.expired_sent = True
                decision.expire_notice = True

        return Transition(record=record, outcome=decision)

    async def _process(self, timer_id: int, today: datetime.date, report: SweepReport):
        decision: Optional[SweepDecision] = await self.storage.mutate_session(
            timer_id, today, self._evaluate, create=False
        )
        if decision is None:
            return
        if decision.accrued:
            report.updated += 1

        if decision.warn:
            if await self._dispatch(self._send_warning, decision, today, "warning_sent"):
                report.warned += 1

        if decision.expire_notice:
            if await self._dispatch(self._send_expiry, decision, today, "expired_sent"):
                report.expired += 1

    async def _dispatch(self, send, decision: SweepDecision, today: datetime.date, flag: str) -> bool:
        """
        Sends a claimed notice. The claim is released unless delivery was
        confirmed, including when a lookup before sending raises.
        """
        delivered = False
        try:
            delivered = await send(decision)
        finally:
            if not delivered:
                await self._release(decision.timer_id, today, flag)
        return delivered

    async def _release(self, timer_id: int, today: datetime.date, flag: str):
        """Clears a claimed notice flag so the next sweep tries again."""

        def _clear(timer, record):
            if record is None:
                return Transition()
            setattr(record, flag, False)
            return Transition(record=record)

        await self.storage.mutate_session(timer_id, today, _clear, create=False)
        logger.warning(f"Will retry {flag.replace('_sent', '')} notice for timer {timer_id}")

    async def _deliver(self, user_id: int, message: str, subject: str) -> bool:
        try:
            return bool(await self.notifier.notify(user_id, message, subject))
        except Exception as e:
            logger.error(f"Notifier failed for user {user_id}: {e}")
            return False

    async def _username(self, user_id: int) -> str:
        user = await self.storage.get_user(user_id)
        return user.username if user else f"user {user_id}"

    async def _send_warning(self, decision: SweepDecision) -> bool:
        minutes = decision.remaining_seconds // 60
        subject = f"Timer Warning: {decision.name} ({decision.category})"
        body = (
            f"Hello {await self._username(decision.user_id)},\n\n"
            f'Your timer "{decision.name}" ({decision.category}) is running low on time.\n\n'
            f"Time Remaining: {minutes} minutes\n\n"
            "Please wrap up your current activity soon.\n\n"
            f"- {self.signature}\n"
        )
        sent = await self._deliver(decision.user_id, body, subject)
        if sent:
            logger.info(f"Sent warning for timer {decision.timer_id}")
        else:
            logger.warning(f"Failed to send warning for timer {decision.timer_id}")
        return sent

    async def _send_expiry(self, decision: SweepDecision) -> bool:
        """Notifies the owner and every administrator; confirmed if anyone got it."""
        subject = f"Timer Expired: {decision.name} ({decision.category})"
        body = (
            f"Hello {await self._username(decision.user_id)},\n\n"
            f'Your timer "{decision.name}" ({decision.category}) has expired.\n\n'
            f"Daily Limit: {decision.limit_seconds // 60} minutes\n"
            f"Usage Today: {decision.elapsed_seconds // 60} minutes\n\n"
            "Please stop using this device immediately.\n\n"
            f"- {self.signature}\n"
        )
        recipients = [decision.user_id]
        for admin_id in await self.storage.get_admin_ids():
            if admin_id not in recipients:
                recipients.append(admin_id)

        delivered = 0
        for user_id in recipients:
            if await self._deliver(user_id, body, subject):
                delivered += 1

        if delivered:
            logger.info(
                f"Sent expiry notification for timer {decision.timer_id} "
                f"to {delivered}/{len(recipients)} recipient(s)"
            )
        else:
            logger.warning(f"Failed to send expiry notification for timer {decision.timer_id}")
        return delivered > 0
