"""
Per-day roster state shared by the reconciliation engine and the sync layer.

One instance exists per roster day; it is replaced, not reset, when the day
rolls over.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, Optional, Set, Any

from roster.core.timezone import to_iso
from roster.models.roster import RosterStatus


@dataclass
class RosterState:
    roster_date: date
    statuses: Dict[str, RosterStatus] = field(default_factory=dict)
    display_times: Dict[str, datetime] = field(default_factory=dict)
    # Students picked at least once today, even if the pick was undone later
    picked_once: Set[str] = field(default_factory=set)
    # Last status the sync layer (or a local write) recorded per student
    last_observed: Dict[str, RosterStatus] = field(default_factory=dict)
    # Instant of the latest write this client made per student
    last_written: Dict[str, datetime] = field(default_factory=dict)

    def status_of(self, student_id: str) -> RosterStatus:
        return self.statuses.get(student_id, RosterStatus.NOT_PICKED)

    def time_of(self, student_id: str) -> Optional[datetime]:
        return self.display_times.get(student_id)

    def observed(self, student_id: str) -> Optional[RosterStatus]:
        return self.last_observed.get(student_id)

    def apply(
        self,
        student_id: str,
        status: RosterStatus,
        display_time: Optional[datetime],
        *,
        written_at: Optional[datetime] = None,
    ) -> None:
        status = RosterStatus.parse(status)
        if written_at is not None:
            previous = self.last_written.get(student_id)
            self.last_written[student_id] = written_at if previous is None else max(previous, written_at)
        self.statuses[student_id] = status
        if display_time is not None:
            self.display_times[student_id] = display_time
        self.last_observed[student_id] = status

        if status == RosterStatus.PICKED:
            self.picked_once.add(student_id)
        elif status == RosterStatus.NOT_PICKED:
            self.picked_once.discard(student_id)

    def forget(self, student_id: str) -> None:
        """Drop a student back to the implicit ``not_picked`` default."""
        self.statuses.pop(student_id, None)
        self.display_times.pop(student_id, None)
        self.last_observed.pop(student_id, None)
        self.last_written.pop(student_id, None)
        self.picked_once.discard(student_id)

    def is_stale(self, student_id: str, server_time: Optional[datetime]) -> bool:
        """True when a store row is not newer than this client's own latest write."""
        written = self.last_written.get(student_id)
        return written is not None and server_time is not None and server_time <= written

    def counts(self, student_ids: Optional[Iterable[str]] = None) -> Dict[str, int]:
        tally = {status.value: 0 for status in RosterStatus}
        ids = self.statuses.keys() if student_ids is None else student_ids
        for student_id in ids:
            tally[self.status_of(student_id).value] += 1
        return tally

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roster_date": self.roster_date.isoformat(),
            "statuses": {sid: st.value for sid, st in self.statuses.items()},
            "display_times": {sid: to_iso(t) for sid, t in self.display_times.items()},
            "picked_once": sorted(self.picked_once),
        }
