"""Tests for change-feed merging, resync and the polling lifecycle."""

import asyncio
import pytest
from datetime import date
from unittest.mock import AsyncMock, patch

from roster.core.exceptions import StoreError
from roster.models.roster import RosterStatus
from roster.schemas.roster import ChangeEventType, RosterChangeEvent
from roster.services.roster_state import RosterState
from roster.services.roster_store import SQLAlchemyRosterStore
from roster.services.sync import RosterSync, SyncState

from support import AVA, BEN, CY, ROSTER_DATE, et


def event(student_id, status, at, event_type=ChangeEventType.UPDATE, roster_date=ROSTER_DATE):
    return RosterChangeEvent(
        event_type=event_type,
        roster_date=roster_date,
        student_id=student_id,
        current_status=status,
        last_update=at,
    )


@pytest.fixture
def state():
    return RosterState(ROSTER_DATE)


@pytest.fixture
def mock_store():
    store = AsyncMock()
    store.earliest_log_at.return_value = None
    store.fetch_statuses.return_value = []
    return store


class TestMergeEvent:
    """Direction-aware merge of single change events."""

    @pytest.mark.asyncio
    async def test_echo_of_applied_change_keeps_time(self, mock_store, feed, state):
        state.apply(AVA, RosterStatus.PICKED, et(7, 5))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "picked", et(7, 30)))

        assert state.time_of(AVA) == et(7, 5)

    @pytest.mark.asyncio
    async def test_first_sighting_uses_server_time(self, mock_store, feed, state):
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "arrived", et(7, 30), ChangeEventType.INSERT))

        assert state.status_of(AVA) == RosterStatus.ARRIVED
        assert state.time_of(AVA) == et(7, 30)

    @pytest.mark.asyncio
    async def test_forward_uses_server_time(self, mock_store, feed, state):
        state.apply(AVA, RosterStatus.PICKED, et(7, 5))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "arrived", et(7, 40)))

        assert state.time_of(AVA) == et(7, 40)
        mock_store.earliest_log_at.assert_not_called()

    @pytest.mark.asyncio
    async def test_backward_uses_earliest_log(self, store, feed, state, students):
        await store.insert_log(ROSTER_DATE, AVA, "picked", {}, at=et(7, 0))
        await store.insert_log(ROSTER_DATE, AVA, "picked", {}, at=et(7, 20))
        state.apply(AVA, RosterStatus.ARRIVED, et(7, 30))
        sync = RosterSync(store, feed, state)

        await sync.merge_event(event(AVA, "picked", et(7, 45)))

        assert state.status_of(AVA) == RosterStatus.PICKED
        assert state.time_of(AVA) == et(7, 0)

    @pytest.mark.asyncio
    async def test_backward_without_history_uses_server_time(self, mock_store, feed, state):
        state.apply(AVA, RosterStatus.CHECKED, et(15, 0))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "arrived", et(15, 5)))

        assert state.time_of(AVA) == et(15, 5)

    @pytest.mark.asyncio
    async def test_unreadable_history_uses_server_time(self, mock_store, feed, state):
        mock_store.earliest_log_at.side_effect = StoreError("timeout")
        state.apply(AVA, RosterStatus.CHECKED, et(15, 0))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "arrived", et(15, 5)))

        assert state.time_of(AVA) == et(15, 5)

    @pytest.mark.asyncio
    async def test_leaving_skipped_uses_server_time(self, mock_store, feed, state):
        state.apply(BEN, RosterStatus.SKIPPED, et(6, 0))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(BEN, "not_picked", et(7, 0)))

        assert state.time_of(BEN) == et(7, 0)
        mock_store.earliest_log_at.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_forgets_student(self, mock_store, feed, state):
        state.apply(AVA, RosterStatus.PICKED, et(7, 5))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(RosterChangeEvent(
            event_type=ChangeEventType.DELETE, roster_date=ROSTER_DATE, student_id=AVA
        ))

        assert state.status_of(AVA) == RosterStatus.NOT_PICKED
        assert state.time_of(AVA) is None
        assert AVA not in state.picked_once

    @pytest.mark.asyncio
    async def test_other_day_is_ignored(self, mock_store, feed, state):
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "picked", et(7, 0), roster_date=date(2024, 3, 13)))

        assert state.statuses == {}

    @pytest.mark.asyncio
    async def test_row_not_newer_than_own_write_is_ignored(self, mock_store, feed, state):
        state.apply(AVA, RosterStatus.CHECKED, et(15, 5), written_at=et(15, 30))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "picked", et(15, 30)))
        await sync.merge_event(event(AVA, "checked", et(15, 30)))

        assert state.status_of(AVA) == RosterStatus.CHECKED
        assert state.time_of(AVA) == et(15, 5)
        mock_store.earliest_log_at.assert_not_called()

    @pytest.mark.asyncio
    async def test_newer_row_after_own_write_is_merged(self, mock_store, feed, state):
        state.apply(AVA, RosterStatus.CHECKED, et(15, 5), written_at=et(15, 30))
        sync = RosterSync(mock_store, feed, state)

        await sync.merge_event(event(AVA, "arrived", et(15, 40)))

        assert state.status_of(AVA) == RosterStatus.ARRIVED
        assert state.time_of(AVA) == et(15, 40)


class TestResync:

    @pytest.mark.asyncio
    async def test_resync_replaces_state_from_store(self, store, feed, state, students):
        await store.upsert_status(ROSTER_DATE, AVA, RosterStatus.PICKED, at=et(7, 5))
        await store.upsert_status(ROSTER_DATE, BEN, RosterStatus.ARRIVED, at=et(7, 10))
        state.apply(CY, RosterStatus.PICKED, et(7, 0))
        sync = RosterSync(store, feed, state)

        await sync.resync()

        assert state.status_of(AVA) == RosterStatus.PICKED
        assert state.time_of(AVA) == et(7, 5)
        assert state.status_of(BEN) == RosterStatus.ARRIVED
        assert state.status_of(CY) == RosterStatus.NOT_PICKED
        assert CY not in state.picked_once

    @pytest.mark.asyncio
    async def test_resync_does_not_move_restored_undo_time(self, store, feed, state, students):
        await store.upsert_status(ROSTER_DATE, AVA, RosterStatus.PICKED, at=et(7, 45))
        state.apply(AVA, RosterStatus.PICKED, et(7, 0))
        sync = RosterSync(store, feed, state)

        await sync.resync()

        assert state.time_of(AVA) == et(7, 0)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_resyncs_and_follows_feed(self, store, feed, state, students):
        await store.upsert_status(ROSTER_DATE, AVA, RosterStatus.PICKED, at=et(7, 5))
        sync = RosterSync(store, feed, state, poll_interval=60)

        await sync.start(visible=False)
        try:
            assert sync.sync_state == SyncState.SUBSCRIBED
            assert feed.subscriber_count(ROSTER_DATE) == 1
            assert state.status_of(AVA) == RosterStatus.PICKED

            await store.upsert_status(ROSTER_DATE, BEN, RosterStatus.PICKED, at=et(7, 15))
            assert state.status_of(BEN) == RosterStatus.PICKED
            assert state.time_of(BEN) == et(7, 15)
        finally:
            await sync.stop()

        assert sync.sync_state == SyncState.IDLE
        assert feed.subscriber_count(ROSTER_DATE) == 0

    @pytest.mark.asyncio
    async def test_polling_picks_up_writes_the_feed_missed(self, session_factory, feed, state, students, clock):
        quiet_store = SQLAlchemyRosterStore(session_factory, clock=clock)
        sync = RosterSync(quiet_store, feed, state, poll_interval=0.01)

        await sync.start(visible=True)
        try:
            assert sync.is_polling
            await quiet_store.upsert_status(ROSTER_DATE, AVA, RosterStatus.ARRIVED, at=et(7, 40))
            for _ in range(50):
                if state.status_of(AVA) == RosterStatus.ARRIVED:
                    break
                await asyncio.sleep(0.01)

            assert state.status_of(AVA) == RosterStatus.ARRIVED
        finally:
            await sync.stop()

        assert not sync.is_polling

    @pytest.mark.asyncio
    async def test_polling_follows_visibility(self, mock_store, feed, state):
        sync = RosterSync(mock_store, feed, state, poll_interval=60)

        await sync.start(visible=False)
        assert not sync.is_polling

        sync.set_visibility(True)
        assert sync.is_polling

        sync.set_visibility(False)
        assert not sync.is_polling

        await sync.stop()

    @pytest.mark.asyncio
    async def test_visibility_while_idle_does_not_poll(self, mock_store, feed, state):
        sync = RosterSync(mock_store, feed, state, poll_interval=60)

        sync.set_visibility(True)

        assert not sync.is_polling

    @pytest.mark.asyncio
    async def test_initial_resync_failure_is_not_fatal(self, mock_store, feed, state):
        mock_store.fetch_statuses.side_effect = StoreError("db down")
        sync = RosterSync(mock_store, feed, state, poll_interval=60)

        await sync.start(visible=False)

        assert sync.sync_state == SyncState.SUBSCRIBED
        await sync.stop()

    @pytest.mark.asyncio
    async def test_failed_start_tears_down(self, mock_store, feed, state):
        sync = RosterSync(mock_store, feed, state, poll_interval=60)

        with patch.object(feed, "subscribe", new=AsyncMock(side_effect=RuntimeError("channel error"))):
            with pytest.raises(RuntimeError):
                await sync.start()

        assert sync.sync_state == SyncState.IDLE
        assert not sync.is_polling

    @pytest.mark.asyncio
    async def test_stop_cleans_up_when_unsubscribe_fails(self, mock_store, feed, state):
        sync = RosterSync(mock_store, feed, state, poll_interval=60)
        await sync.start(visible=True)

        with patch.object(sync._subscription, "unsubscribe", side_effect=RuntimeError("socket closed")):
            with pytest.raises(RuntimeError):
                await sync.stop()

        assert sync.sync_state == SyncState.IDLE
        assert not sync.is_polling

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, mock_store, feed, state):
        sync = RosterSync(mock_store, feed, state, poll_interval=60)
        await sync.start()

        await sync.stop()
        await sync.stop()

        assert feed.subscriber_count(ROSTER_DATE) == 0
