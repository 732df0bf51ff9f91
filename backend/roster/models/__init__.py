from .student import Student, WEEKDAY_LETTERS
from .roster import RosterStatus, RosterStatusEntry
from .log import LogEntry

__all__ = [
    "Student",
    "WEEKDAY_LETTERS",
    "RosterStatus",
    "RosterStatusEntry",
    "LogEntry",
]
