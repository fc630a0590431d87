"""
Wall-clock source in the household's fixed timezone.
"""

import datetime
import time
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Australia/Melbourne"


class Clock:
    """
    Current time in the household timezone.

    timestamp() is what elapsed time is computed from; now() and today()
    decide which calendar date (and so which weekday) a session belongs to.
    Tests replace this with a clock they can move by hand.
    """

    def __init__(self, timezone: str = DEFAULT_TIMEZONE):
        self.tz = ZoneInfo(timezone)

    def timestamp(self) -> float:
        return time.time()

    def now(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.timestamp(), tz=self.tz)

    def today(self) -> datetime.date:
        return self.now().date()
