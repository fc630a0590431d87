"""
Daily quota arithmetic. Pure functions, no I/O.
"""

import datetime

SATURDAY = 5
SUNDAY = 6

WARNING_USAGE_PERCENT = 80


def is_weekend(day: datetime.date) -> bool:
    """Saturday or Sunday of a date already expressed in the household timezone."""
    return day.weekday() in (SATURDAY, SUNDAY)


def base_limit_minutes(timer, day: datetime.date) -> int:
    return timer.weekend_minutes if is_weekend(day) else timer.weekday_minutes


def effective_limit_seconds(timer, day: datetime.date, bonus_seconds: int = 0) -> int:
    """
    Fully resolved quota of a timer for one date.

    Args:
        timer: anything with weekday_minutes and weekend_minutes
        day: the session date
        bonus_seconds: bonus granted for that date (0 when no session exists yet)

    Returns:
        int: limit in seconds
    """
    return base_limit_minutes(timer, day) * 60 + (bonus_seconds or 0)


def remaining_seconds(limit_seconds: int, elapsed_seconds: int) -> int:
    """Remaining quota; negative when a reduced limit is already exceeded."""
    return limit_seconds - elapsed_seconds


def display_remaining(limit_seconds: int, elapsed_seconds: int) -> int:
    return max(0, remaining_seconds(limit_seconds, elapsed_seconds))


def usage_percent(limit_seconds: int, elapsed_seconds: int) -> float:
    if limit_seconds <= 0:
        return 0.0
    return elapsed_seconds / limit_seconds * 100


def status_color(limit_seconds: int, elapsed_seconds: int) -> str:
    """red at 100% usage or more, yellow from 80%, green otherwise."""
    percent = usage_percent(limit_seconds, elapsed_seconds)
    if percent >= 100:
        return "red"
    if percent >= WARNING_USAGE_PERCENT:
        return "yellow"
    return "green"
