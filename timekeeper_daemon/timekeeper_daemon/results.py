"""
Operation results and the error taxonomy of the timer core.

Permission, validation and transition problems are ordinary results, not
exceptions. Infrastructure problems are raised as PersistenceError inside the
core and converted to a retryable result at the operation boundary.
"""

import enum
import functools
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from timekeeper_daemon.logging import get_logger

logger = get_logger("Results")


class TimekeeperError(Exception):
    """Base class for errors raised inside the timer core."""

    pass


class PersistenceError(TimekeeperError):
    """Storage unreachable, timed out or lost a write conflict. Retryable."""

    retryable = True


class Failure(str, enum.Enum):
    PERMISSION_DENIED = "permission_denied"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"
    INVALID_ARGUMENT = "invalid_argument"
    PERSISTENCE = "persistence"


# Human-readable reasons
TIME_EXPIRED = "time expired"
PAUSED = "paused"
NOT_RUNNING = "not running"
NOT_OWNER = "not your timer"
NOT_ADMIN = "administrator required"
TIMER_NOT_FOUND = "timer not found"
TRY_AGAIN = "try again"


@dataclass
class TimerResult:
    """
    Outcome of a public timer operation.

    Attributes:
        ok: whether the operation took effect
        reason: human-readable reason, set on failures and notable successes
        failure: failure category when ok is False
        retryable: True only for infrastructure failures
        now_paused: pause state after toggle_pause
        data: operation specific payload (new timer id, cut_off flag, ...)
    """

    ok: bool
    reason: Optional[str] = None
    failure: Optional[Failure] = None
    retryable: bool = False
    now_paused: Optional[bool] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, reason=None, **data) -> "TimerResult":
        return cls(ok=True, reason=reason, data=data)

    @classmethod
    def fail(cls, failure: Failure, reason: str, **data) -> "TimerResult":
        return cls(ok=False, reason=reason, failure=failure, data=data)

    def to_dict(self) -> dict:
        result = asdict(self)
        result["failure"] = self.failure.value if self.failure else None
        if self.now_paused is None:
            result.pop("now_paused")
        return result


def guarded(func):
    """
    Turns a PersistenceError escaping a public coroutine into a retryable
    failure result, so callers always get a definite TimerResult.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PersistenceError as e:
            logger.warning(f"{func.__name__} failed on storage, caller may retry: {e}")
            return TimerResult(
                ok=False,
                reason=TRY_AGAIN,
                failure=Failure.PERSISTENCE,
                retryable=True,
            )

    return wrapper
