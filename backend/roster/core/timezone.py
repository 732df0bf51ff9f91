"""
Timezone-safe conversion between civil wall-clock times and UTC instants.

All roster days and operator-entered pickup times are interpreted in one
fixed civil zone (America/New_York by default) regardless of where the
device running the code is located.
"""
import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from roster.core.exceptions import ValidationError

MAX_RESOLVE_ITERATIONS = 3

_CIVIL_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d{1,6}))?)?$"
)

ZoneLike = Union[str, ZoneInfo]


def _zone(tz: ZoneLike) -> ZoneInfo:
    return tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime (patched in tests)."""
    return datetime.now(timezone.utc)


def ensure_utc(instant: datetime) -> datetime:
    """Normalize an instant to aware UTC; naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def local_wall_clock_to_instant(civil: datetime, tz: ZoneLike) -> datetime:
    """
    Resolve a civil date-time in ``tz`` to the absolute instant it names.

    The civil value is first read as if it were UTC. The guess is then
    rendered back into ``tz`` and shifted by the difference between the
    desired and the rendered wall clock until they agree. The offset is
    piecewise constant, so at most one discontinuity has to be crossed.
    Times in a spring-forward gap resolve to the instant after the gap;
    ambiguous fall-back times resolve to the first occurrence.
    """
    if civil.tzinfo is not None:
        raise ValueError("civil time must not carry a UTC offset")

    zone = _zone(tz)
    desired = civil.replace(tzinfo=timezone.utc)
    guess = desired
    for _ in range(MAX_RESOLVE_ITERATIONS):
        rendered = guess.astimezone(zone).replace(tzinfo=timezone.utc)
        delta = desired - rendered
        if delta == timedelta(0):
            break
        guess = guess + delta
    return guess


def instant_to_local_wall_clock(instant: datetime, tz: ZoneLike) -> datetime:
    """Render an instant as a naive wall-clock datetime in ``tz``."""
    return ensure_utc(instant).astimezone(_zone(tz)).replace(tzinfo=None)


def roster_date_for(instant: datetime, tz: ZoneLike) -> date:
    return instant_to_local_wall_clock(instant, tz).date()


def today_roster_date(tz: ZoneLike, now: Optional[datetime] = None) -> date:
    """The civil date in ``tz`` that keys all of today's roster rows."""
    return roster_date_for(now or utc_now(), tz)


def parse_civil(value: Union[str, datetime]) -> datetime:
    """
    Parse an operator-entered civil time such as ``2024-03-10T15:10``.

    Values carrying a UTC offset are rejected: a civil time only has
    meaning together with the roster timezone.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            raise ValidationError("Pickup time must be a wall-clock time without an offset")
        return value

    match = _CIVIL_PATTERN.match(str(value).strip())
    if not match:
        raise ValidationError(f"Invalid pickup time: {value!r} (expected YYYY-MM-DDTHH:MM)")

    year, month, day, hour, minute, second, fraction = match.groups()
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute),
            int(second or 0), int((fraction or "0").ljust(6, "0"))
        )
    except ValueError as e:
        raise ValidationError(f"Invalid pickup time: {value!r} ({e})")


def format_civil(civil: datetime) -> str:
    return civil.strftime("%Y-%m-%dT%H:%M")


def format_display_time(instant: datetime, tz: ZoneLike) -> str:
    """Operator-facing clock time, e.g. ``3:10 PM``."""
    local = instant_to_local_wall_clock(instant, tz)
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def to_iso(instant: Optional[datetime]) -> Optional[str]:
    if instant is None:
        return None
    return ensure_utc(instant).isoformat().replace("+00:00", "Z")


def parse_instant(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 instant crossing the store boundary."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
