"""
Reconciliation engine for roster status changes.

Each change is validated locally, written through the authoritative store
procedure (falling back to a direct upsert plus a best-effort log append),
applied to the local roster state, and given a display time that tells
forward progress apart from an undo.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from roster.core.exceptions import StoreError, TerminalPersistenceError
from roster.core.timezone import (
    ZoneLike, local_wall_clock_to_instant, parse_civil, to_iso, utc_now
)
from roster.models.roster import RosterStatus
from roster.services.eligibility import BusEligibility
from roster.services.roster_state import RosterState
from roster.services.roster_store import RosterStore
from roster.services.status_model import TransitionDirection, transition

logger = logging.getLogger(__name__)

# Meta keys an operator-entered civil pickup time may arrive under
PICKUP_TIME_KEYS = ("pickup_time", "picked_at")


class WritePath:
    AUTHORITATIVE = "authoritative"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class StatusChange:
    """Outcome of a successful ``set_status`` call."""
    student_id: str
    previous: RosterStatus
    status: RosterStatus
    direction: TransitionDirection
    display_time: datetime
    write_path: str
    log_appended: bool = True


class ReconciliationEngine:
    """Sole mutator of a day's ``RosterState`` for user-initiated changes."""

    def __init__(
        self,
        store: RosterStore,
        state: RosterState,
        *,
        tz: ZoneLike,
        clock: Callable[[], datetime] = utc_now,
        eligibility: Optional[BusEligibility] = None,
    ):
        self.store = store
        self.state = state
        self.tz = tz
        self.clock = clock
        self.eligibility = eligibility

    async def set_status(
        self,
        student_id: str,
        requested: RosterStatus,
        meta: Optional[Dict[str, Any]] = None,
    ) -> StatusChange:
        """
        Persist and apply a status change for one student.

        Raises:
            ValidationError: the change is not allowed or the student is
                unknown; nothing was written
            TerminalPersistenceError: the authoritative write and the
                fallback upsert both failed; local state is unchanged
        """
        requested = RosterStatus.parse(requested)
        prev_status = self.state.status_of(student_id)
        prev_time = self.state.time_of(student_id)

        student = None
        if requested == RosterStatus.SKIPPED and self.eligibility is not None:
            student = await self.store.get_student(student_id)

        decision = transition(
            prev_status,
            requested,
            meta,
            student=student,
            eligibility=self.eligibility,
            student_id=student_id,
        )

        enriched, pickup_instant = self._enrich_meta(decision.meta, prev_status, prev_time, requested)
        now = self.clock()

        write_path, log_appended = await self._persist(
            student_id, requested, enriched, decision.pickup_person, now
        )

        display_time = await self._display_time(student_id, requested, decision.direction, prev_time, pickup_instant, now)
        self.state.apply(student_id, requested, display_time, written_at=now)

        logger.info(
            f"Student {student_id}: {prev_status.value} -> {requested.value} "
            f"({decision.direction.value}, via {write_path})"
        )
        return StatusChange(
            student_id=student_id,
            previous=prev_status,
            status=requested,
            direction=decision.direction,
            display_time=display_time,
            write_path=write_path,
            log_appended=log_appended,
        )

    def _enrich_meta(
        self,
        meta: Dict[str, Any],
        prev_status: RosterStatus,
        prev_time: Optional[datetime],
        requested: RosterStatus,
    ) -> Tuple[Dict[str, Any], Optional[datetime]]:
        enriched = dict(meta)
        enriched["prev_status"] = prev_status.value
        enriched["prev_time"] = to_iso(prev_time)

        pickup_instant = None
        if requested == RosterStatus.CHECKED:
            for key in PICKUP_TIME_KEYS:
                raw = enriched.get(key)
                if raw:
                    # The raw civil value stays in meta for the audit trail
                    pickup_instant = local_wall_clock_to_instant(parse_civil(raw), self.tz)
                    break
        return enriched, pickup_instant

    async def _persist(
        self,
        student_id: str,
        status: RosterStatus,
        meta: Dict[str, Any],
        pickup_person: Optional[str],
        now: datetime,
    ) -> Tuple[str, bool]:
        roster_date = self.state.roster_date
        try:
            await self.store.set_status_authoritative(
                roster_date, student_id, status, meta, pickup_person=pickup_person, at=now
            )
            return WritePath.AUTHORITATIVE, True
        except StoreError as e:
            logger.warning(f"Authoritative status write failed for {student_id}, using fallback: {e}")

        try:
            await self.store.upsert_status(roster_date, student_id, status, at=now)
        except StoreError as e:
            logger.error(f"Fallback status upsert failed for {student_id}: {e}")
            raise TerminalPersistenceError(student_id, status.value) from e

        try:
            await self.store.insert_log(
                roster_date, student_id, status.value, meta, pickup_person=pickup_person, at=now
            )
        except StoreError as e:
            logger.warning(f"Audit log append failed for {student_id} ({status.value}); status was saved: {e}")
            return WritePath.FALLBACK, False
        return WritePath.FALLBACK, True

    async def _display_time(
        self,
        student_id: str,
        status: RosterStatus,
        direction: TransitionDirection,
        prev_time: Optional[datetime],
        pickup_instant: Optional[datetime],
        now: datetime,
    ) -> datetime:
        if direction == TransitionDirection.BACKWARD:
            earliest = await self.earliest_reached(student_id, status)
            return earliest or now
        if direction == TransitionDirection.LATERAL:
            return pickup_instant or prev_time or now
        if direction == TransitionDirection.RESET:
            return now
        return pickup_instant or now

    async def earliest_reached(self, student_id: str, status: RosterStatus) -> Optional[datetime]:
        """Earliest logged time ``status`` was reached today, if readable."""
        try:
            return await self.store.earliest_log_at(self.state.roster_date, student_id, status.value)
        except StoreError as e:
            logger.warning(f"Could not read log history for {student_id} ({status.value}): {e}")
            return None
