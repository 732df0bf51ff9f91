"""
Realtime + polling synchronization of today's roster.

A change-feed subscription delivers row events as they happen; a polling
loop runs a full resync while the host view is visible to cover events the
feed missed. Both go through the same direction-aware merge, so replaying
an event the client already applied never moves a display time.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from roster.core.config import settings
from roster.models.roster import RosterStatus
from roster.schemas.roster import ChangeEventType, RosterChangeEvent
from roster.services.change_feed import ChangeFeed, Subscription
from roster.services.dispatcher import MessageKind, RosterDispatcher
from roster.services.roster_state import RosterState
from roster.services.roster_store import RosterStore
from roster.services.status_model import TransitionDirection, classify
from roster.core.exceptions import StoreError

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"


class RosterSync:
    """Keeps a ``RosterState`` in step with the store for one roster day."""

    def __init__(
        self,
        store: RosterStore,
        feed: ChangeFeed,
        state: RosterState,
        *,
        poll_interval: Optional[float] = None,
        dispatcher: Optional[RosterDispatcher] = None,
    ):
        self.store = store
        self.feed = feed
        self.state = state
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL_SECONDS
        self.dispatcher = dispatcher
        self.sync_state = SyncState.IDLE
        self.visible = False
        self._subscription: Optional[Subscription] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self, visible: bool = True) -> None:
        """Subscribe to today's rows, resync once acknowledged, start polling."""
        if self.sync_state != SyncState.IDLE:
            return
        self.visible = visible
        try:
            self._subscription = await self.feed.subscribe(self.state.roster_date, self._on_feed_event)
            self.sync_state = SyncState.SUBSCRIBED

            # Events published before the subscription was live are only visible via a full fetch
            try:
                await self._request_resync()
            except StoreError as e:
                logger.warning(f"Initial roster resync failed for {self.state.roster_date}: {e}")

            if self.visible:
                self._start_polling()
        except BaseException:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Unsubscribe and stop polling; safe to call on any path, any number of times."""
        try:
            if self._subscription is not None:
                self._subscription.unsubscribe()
        finally:
            self._subscription = None
            self.sync_state = SyncState.IDLE
            await self._cancel_polling()

    def set_visibility(self, visible: bool) -> None:
        """Polling runs only while the host view is visible."""
        self.visible = visible
        if self.sync_state == SyncState.IDLE:
            return
        if visible:
            self._start_polling()
        elif self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def merge_event(self, event: RosterChangeEvent) -> None:
        if event.roster_date != self.state.roster_date:
            logger.debug(f"Ignoring change for {event.roster_date} on roster {self.state.roster_date}")
            return

        if event.event_type == ChangeEventType.DELETE:
            self.state.forget(event.student_id)
            return

        await self._merge_row(event.student_id, event.current_status, event.last_update)

    async def resync(self) -> None:
        """Fetch every row for today and merge it; rows that vanished revert to not_picked."""
        rows = await self.store.fetch_statuses(self.state.roster_date)
        seen = set()
        for row in rows:
            seen.add(row.student_id)
            await self._merge_row(row.student_id, row.current_status, row.last_update)

        for student_id in list(self.state.statuses):
            if student_id not in seen:
                self.state.forget(student_id)

    async def _merge_row(
        self,
        student_id: str,
        new_status: RosterStatus,
        server_time: Optional[datetime],
    ) -> None:
        new_status = RosterStatus.parse(new_status)
        if self.state.is_stale(student_id, server_time):
            # Echo of this client's own write, or a row older than it
            logger.debug(f"Ignoring stale row for {student_id}: {new_status.value} at {server_time}")
            return

        observed = self.state.observed(student_id)

        if observed is None:
            display_time = server_time
        else:
            direction = classify(observed, new_status)
            if direction == TransitionDirection.LATERAL:
                # Keep whatever time is shown (possibly a restored undo time)
                display_time = None
            elif direction == TransitionDirection.BACKWARD:
                # last_update is the undo itself, not when the status was first reached
                display_time = await self._earliest_reached(student_id, new_status) or server_time
            else:
                display_time = server_time

        logger.debug(f"Merged {student_id}: {observed} -> {new_status.value}")
        self.state.apply(student_id, new_status, display_time)

    async def _earliest_reached(self, student_id: str, status: RosterStatus) -> Optional[datetime]:
        try:
            return await self.store.earliest_log_at(self.state.roster_date, student_id, status.value)
        except StoreError as e:
            logger.warning(f"Could not read log history for {student_id} ({status.value}): {e}")
            return None

    async def _on_feed_event(self, event: RosterChangeEvent) -> None:
        if self.dispatcher is not None:
            self.dispatcher.post(MessageKind.FEED_EVENT, event)
        else:
            await self.merge_event(event)

    async def _request_resync(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.submit(MessageKind.POLL_TICK)
        else:
            await self.resync()

    def _start_polling(self) -> None:
        if self.is_polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _cancel_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if not self.visible:
                continue
            try:
                await self._request_resync()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Roster poll resync failed: {e}")
