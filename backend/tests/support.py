"""Constants and helpers shared by the roster test modules."""

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from roster.core.timezone import local_wall_clock_to_instant


NY = ZoneInfo("America/New_York")
# A Tuesday, two days after the 2024 spring-forward change
ROSTER_DATE = date(2024, 3, 12)

AVA = "stu-ava"
BEN = "stu-ben"
CY = "stu-cy"
DEE = "stu-dee"


def et(hour: int, minute: int = 0, day: date = ROSTER_DATE) -> datetime:
    """Instant for a New York wall-clock time on the roster day."""
    return local_wall_clock_to_instant(datetime(day.year, day.month, day.day, hour, minute), NY)


class FakeClock:
    """Callable clock that tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
