"""
Tests for the session state machine: start, stop, pause and accrual.
"""

import datetime
from zoneinfo import ZoneInfo

import pytest

from timekeeper_daemon.results import Failure
from timekeeper_daemon.sessions import (
    IDLE,
    STOP_PAUSED,
    STOP_QUOTA_REDUCED,
    STOP_USER,
    Paused,
    Running,
    SessionRecord,
)

WEDNESDAY = datetime.date(2026, 10, 14)


# ---------------------------------------------------------------------------
# SessionRecord
# ---------------------------------------------------------------------------


def test_accrue_moves_started_at_by_whole_seconds():
    record = SessionRecord(timer_id=1, session_date=WEDNESDAY, status=Running(100.5))

    assert record.accrue(160.9) == 60
    assert record.elapsed_seconds == 60
    assert record.status == Running(160.5)

    # The leftover 0.4 s plus the next 0.6 s make a whole second
    assert record.accrue(161.0) == 0
    assert record.accrue(161.6) == 1
    assert record.elapsed_seconds == 61


def test_accrue_after_clock_stepped_back_counts_nothing():
    record = SessionRecord(
        timer_id=1, session_date=WEDNESDAY, elapsed_seconds=30, status=Running(100.0)
    )
    assert record.accrue(90.0) == 0
    assert record.elapsed_seconds == 30
    assert record.status == Running(90.0)


def test_accrue_ignores_stopped_sessions():
    record = SessionRecord(timer_id=1, session_date=WEDNESDAY, elapsed_seconds=30)
    assert record.accrue(1000.0) == 0
    assert record.elapsed_seconds == 30


def test_stop_records_reason():
    record = SessionRecord(timer_id=1, session_date=WEDNESDAY, status=Running(0.0))
    record.stop(120.0, STOP_USER)
    assert record.status is IDLE
    assert record.elapsed_seconds == 120
    assert record.stop_reason == STOP_USER


# ---------------------------------------------------------------------------
# start / stop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_then_stop_adds_wall_clock_time(service, storage, clock, laptop, users):
    result = await service.start_timer(laptop, users["bob"])
    assert result.ok

    clock.advance(1800)
    result = await service.stop_timer(laptop, users["bob"])
    assert result.ok
    assert result.data["elapsed_seconds"] == 1800

    record = storage.get_session(laptop, WEDNESDAY)
    assert record.status is IDLE
    assert record.elapsed_seconds == 1800
    assert record.stop_reason == STOP_USER


@pytest.mark.asyncio
async def test_start_running_timer_keeps_started_at(service, storage, clock, laptop, users):
    await service.start_timer(laptop, users["bob"])
    clock.advance(100)

    result = await service.start_timer(laptop, users["bob"])
    assert result.ok
    assert result.reason == "already running"

    clock.advance(100)
    result = await service.stop_timer(laptop, users["bob"])
    assert result.data["elapsed_seconds"] == 200


@pytest.mark.asyncio
async def test_start_by_other_user_is_denied(service, laptop, users):
    result = await service.start_timer(laptop, users["carol"])
    assert not result.ok
    assert result.failure is Failure.PERMISSION_DENIED
    assert result.reason == "not your timer"
    assert not result.retryable


@pytest.mark.asyncio
async def test_start_unknown_or_inactive_timer(service, make_timer, users):
    result = await service.start_timer(999, users["bob"])
    assert result.failure is Failure.NOT_FOUND
    assert result.reason == "timer not found"

    retired = make_timer(users["bob"], name="Old tablet", active=False)
    result = await service.start_timer(retired, users["bob"])
    assert result.failure is Failure.NOT_FOUND


@pytest.mark.asyncio
async def test_start_blocked_when_time_expired(service, storage, laptop, users):
    storage.upsert_session(
        SessionRecord(timer_id=laptop, session_date=WEDNESDAY, elapsed_seconds=3600)
    )

    result = await service.start_timer(laptop, users["bob"])
    assert not result.ok
    assert result.failure is Failure.INVALID_TRANSITION
    assert result.reason == "time expired"
    assert not storage.get_session(laptop, WEDNESDAY).is_running

    logs = await service.timer_logs(laptop)
    assert logs[0]["action"] == "start_blocked"
    assert logs[0]["details"] == "Start blocked: Time expired (elapsed: 60m, remaining: 0m)"
    assert logs[0]["actor"] == "bob"


@pytest.mark.asyncio
async def test_successful_start_is_not_logged(service, laptop, users):
    await service.start_timer(laptop, users["bob"])
    assert await service.timer_logs(laptop) == []


@pytest.mark.asyncio
async def test_stop_when_not_running(service, laptop, users):
    # No session exists yet for today
    result = await service.stop_timer(laptop, users["bob"])
    assert result.failure is Failure.INVALID_TRANSITION
    assert result.reason == "not running"

    await service.toggle_pause(laptop, users["bob"])
    result = await service.stop_timer(laptop, users["bob"])
    assert result.reason == "not running"


@pytest.mark.asyncio
async def test_stop_by_other_user_is_denied(service, laptop, users):
    await service.start_timer(laptop, users["bob"])
    result = await service.stop_timer(laptop, users["carol"])
    assert result.failure is Failure.PERMISSION_DENIED


# ---------------------------------------------------------------------------
# pause / resume
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pause_resume_round_trip(service, storage, clock, laptop, users):
    await service.start_timer(laptop, users["bob"])
    clock.advance(600)

    result = await service.toggle_pause(laptop, users["bob"])
    assert result.ok and result.now_paused is True
    record = storage.get_session(laptop, WEDNESDAY)
    assert record.status == Paused(clock.timestamp())
    assert record.elapsed_seconds == 600
    assert record.stop_reason == STOP_PAUSED

    # Paused time is not counted
    clock.advance(1200)
    result = await service.toggle_pause(laptop, users["bob"])
    assert result.ok and result.now_paused is False
    record = storage.get_session(laptop, WEDNESDAY)
    assert record.status == Running(clock.timestamp())
    assert record.stop_reason is None

    clock.advance(300)
    result = await service.stop_timer(laptop, users["bob"])
    assert result.data["elapsed_seconds"] == 900


@pytest.mark.asyncio
async def test_pause_idle_timer_and_start_refused_while_paused(service, storage, laptop, users):
    result = await service.toggle_pause(laptop, users["bob"])
    assert result.ok and result.now_paused is True

    result = await service.start_timer(laptop, users["bob"])
    assert not result.ok
    assert result.failure is Failure.INVALID_TRANSITION
    assert result.reason == "paused"
    assert storage.get_session(laptop, WEDNESDAY).is_paused


@pytest.mark.asyncio
async def test_resume_expired_session_goes_idle(service, storage, clock, laptop, users):
    storage.upsert_session(
        SessionRecord(
            timer_id=laptop,
            session_date=WEDNESDAY,
            elapsed_seconds=3600,
            status=Paused(clock.timestamp()),
        )
    )

    result = await service.toggle_pause(laptop, users["bob"])
    assert not result.ok
    assert result.failure is Failure.INVALID_TRANSITION
    assert result.now_paused is False
    assert result.reason == "time expired"
    assert storage.get_session(laptop, WEDNESDAY).status is IDLE

    logs = await service.timer_logs(laptop)
    assert logs[0]["action"] == "start_blocked"


@pytest.mark.asyncio
async def test_toggle_pause_by_other_user_is_denied(service, laptop, users):
    result = await service.toggle_pause(laptop, users["carol"])
    assert result.failure is Failure.PERMISSION_DENIED
    assert result.now_paused is None


# ---------------------------------------------------------------------------
# status polling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_polling_never_double_counts(service, storage, clock, laptop, users):
    await service.start_timer(laptop, users["bob"])
    clock.advance(60)

    first = await service.get_user_timers(users["bob"])
    second = await service.get_user_timers(users["bob"])
    assert first[0].elapsed_seconds == 60
    assert second[0].elapsed_seconds == 60
    assert storage.get_session(laptop, WEDNESDAY).elapsed_seconds == 60

    clock.advance(40)
    result = await service.stop_timer(laptop, users["bob"])
    assert result.data["elapsed_seconds"] == 100


@pytest.mark.asyncio
async def test_get_user_timers_view(service, clock, make_timer, laptop, users):
    make_timer(users["bob"], name="Switch", category="Gaming Console", weekday=30, weekend=90)
    make_timer(users["bob"], name="Old phone", category="Phone", active=False)
    make_timer(users["carol"], name="iPad", category="Tablet")

    await service.start_timer(laptop, users["bob"])
    clock.advance(3000)

    views = await service.get_user_timers(users["bob"])
    assert [view.name for view in views] == ["Laptop", "Switch"]

    laptop_view = views[0]
    assert laptop_view.limit_seconds == 3600
    assert laptop_view.elapsed_seconds == 3000
    assert laptop_view.remaining_seconds == 600
    assert laptop_view.status_color == "yellow"
    assert laptop_view.is_running and not laptop_view.is_paused

    switch_view = views[1]
    assert switch_view.limit_seconds == 1800
    assert switch_view.elapsed_seconds == 0
    assert switch_view.status_color == "green"

    data = laptop_view.to_dict()
    assert data["session_date"] == "2026-10-14"
    assert data["category"] == "Computer"


@pytest.mark.asyncio
async def test_weekend_limit_applies_on_saturday(service, clock, laptop, users):
    clock.set(datetime.datetime(2026, 10, 17, 10, 0, tzinfo=ZoneInfo("Australia/Melbourne")))
    views = await service.get_user_timers(users["bob"])
    assert views[0].limit_seconds == 7200
    assert views[0].session_date == datetime.date(2026, 10, 17)


@pytest.mark.asyncio
async def test_day_is_decided_in_household_timezone(service, storage, clock, laptop, users):
    # 00:30 on Saturday in Melbourne is still Friday in UTC
    clock.set(datetime.datetime(2026, 10, 17, 0, 30, tzinfo=ZoneInfo("Australia/Melbourne")))
    views = await service.get_user_timers(users["bob"])
    assert views[0].session_date == datetime.date(2026, 10, 17)
    assert views[0].limit_seconds == 7200


@pytest.mark.asyncio
async def test_cut_off_notice_is_shown(service, storage, clock, laptop, users):
    await service.start_timer(laptop, users["bob"])
    clock.advance(1800)
    assert await service.sessions.enforce_limit(laptop) is False

    storage.upsert_session(
        SessionRecord(
            timer_id=laptop,
            session_date=WEDNESDAY,
            elapsed_seconds=3500,
            status=Running(clock.timestamp()),
        )
    )
    clock.advance(100)
    assert await service.sessions.enforce_limit(laptop) is True

    view = (await service.get_user_timers(users["bob"]))[0]
    assert view.stop_reason == STOP_QUOTA_REDUCED
    assert view.notice == "Stopped: the daily limit was reduced."
    assert view.remaining_seconds == 0
    assert view.status_color == "red"
