"""
Lifecycle owner for one roster day.

A ``RosterSession`` holds the day's state together with the engine and the
sync layer that mutate it; ``RosterSessionManager`` swaps sessions when the
civil date rolls over.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from roster.core.exceptions import TerminalPersistenceError
from roster.core.timezone import ZoneLike, today_roster_date, utc_now
from roster.models.roster import RosterStatus
from roster.services.change_feed import ChangeFeed
from roster.services.dispatcher import MessageKind, RosterDispatcher
from roster.services.eligibility import BusEligibility
from roster.services.reconciliation import ReconciliationEngine, StatusChange
from roster.services.roster_state import RosterState
from roster.services.roster_store import RosterStore
from roster.services.sync import RosterSync

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserAction:
    student_id: str
    status: RosterStatus
    meta: Optional[Dict[str, Any]] = None


class RosterSession:
    def __init__(
        self,
        store: RosterStore,
        feed: ChangeFeed,
        roster_date: date,
        *,
        tz: ZoneLike,
        clock: Callable[[], datetime] = utc_now,
        eligibility: Optional[BusEligibility] = None,
        poll_interval: Optional[float] = None,
    ):
        self.state = RosterState(roster_date)
        self.dispatcher = RosterDispatcher()
        self.engine = ReconciliationEngine(store, self.state, tz=tz, clock=clock, eligibility=eligibility)
        self.sync = RosterSync(store, feed, self.state, poll_interval=poll_interval, dispatcher=self.dispatcher)

        self.dispatcher.register_handler(MessageKind.USER_ACTION, self._handle_user_action)
        self.dispatcher.register_handler(MessageKind.FEED_EVENT, self.sync.merge_event)
        self.dispatcher.register_handler(MessageKind.POLL_TICK, self._handle_poll_tick)

    @property
    def roster_date(self) -> date:
        return self.state.roster_date

    async def open(self, visible: bool = True) -> "RosterSession":
        self.dispatcher.start()
        try:
            await self.sync.start(visible=visible)
        except BaseException:
            await self.close()
            raise
        return self

    async def close(self) -> None:
        try:
            await self.sync.stop()
        finally:
            await self.dispatcher.stop()

    async def __aenter__(self) -> "RosterSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def set_status(
        self,
        student_id: str,
        status: RosterStatus,
        meta: Optional[Dict[str, Any]] = None,
    ) -> StatusChange:
        return await self.dispatcher.submit(
            MessageKind.USER_ACTION,
            UserAction(student_id, RosterStatus.parse(status), meta),
        )

    def set_visibility(self, visible: bool) -> None:
        self.sync.set_visibility(visible)

    def snapshot(self) -> Dict[str, Any]:
        return self.state.to_dict()

    async def _handle_user_action(self, action: UserAction) -> StatusChange:
        try:
            return await self.engine.set_status(action.student_id, action.status, action.meta)
        except TerminalPersistenceError:
            # Local state was not advanced; pull the store's view as soon as possible
            self.dispatcher.post(MessageKind.POLL_TICK)
            raise

    async def _handle_poll_tick(self, _payload=None) -> None:
        await self.sync.resync()


class RosterSessionManager:
    """Hands out the session for today's roster date, replacing it on rollover."""

    def __init__(
        self,
        store: RosterStore,
        feed: ChangeFeed,
        *,
        tz: ZoneLike,
        clock: Callable[[], datetime] = utc_now,
        eligibility: Optional[BusEligibility] = None,
        poll_interval: Optional[float] = None,
        visible: bool = True,
    ):
        self.store = store
        self.feed = feed
        self.tz = tz
        self.clock = clock
        self.eligibility = eligibility
        self.poll_interval = poll_interval
        self.visible = visible
        self._session: Optional[RosterSession] = None
        self._lock = asyncio.Lock()

    def today(self) -> date:
        return today_roster_date(self.tz, self.clock())

    async def current(self) -> RosterSession:
        async with self._lock:
            today = self.today()
            if self._session is not None and self._session.roster_date == today:
                return self._session

            if self._session is not None:
                logger.info(f"Roster day rolled over from {self._session.roster_date} to {today}")
                old, self._session = self._session, None
                await old.close()

            session = RosterSession(
                self.store,
                self.feed,
                today,
                tz=self.tz,
                clock=self.clock,
                eligibility=self.eligibility,
                poll_interval=self.poll_interval,
            )
            await session.open(visible=self.visible)
            self._session = session
            return session

    def set_visibility(self, visible: bool) -> None:
        self.visible = visible
        if self._session is not None:
            self._session.set_visibility(visible)

    async def close(self) -> None:
        async with self._lock:
            session, self._session = self._session, None
            if session is not None:
                await session.close()
