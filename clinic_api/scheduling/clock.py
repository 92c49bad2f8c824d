from datetime import date, datetime, time, timezone
from typing import Protocol, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger(__name__)

class Clock(Protocol):
    def now(self) -> Tuple[date, time]:
        """Current civil date and wall-clock time in the clinic's zone."""
        ...

class SystemClock:
    def __init__(self, timezone_name: str = "UTC"):
        try:
            self._tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Invalid clinic timezone '{timezone_name}'; defaulting to UTC")
            self._tz = timezone.utc

    def now(self) -> Tuple[date, time]:
        current = datetime.now(self._tz)
        return current.date(), current.time().replace(tzinfo=None)

class FixedClock:
    """Clock pinned to a given instant; ``advance_to`` moves it."""

    def __init__(self, today: date, at: time):
        self._today = today
        self._at = at

    def advance_to(self, today: date, at: time) -> None:
        self._today = today
        self._at = at

    def now(self) -> Tuple[date, time]:
        return self._today, self._at
