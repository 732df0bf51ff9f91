"""Tests for roster session wiring and day rollover."""

import asyncio
import pytest
from unittest.mock import AsyncMock, patch

from roster.core.exceptions import PickupPersonRequired, StoreError, TerminalPersistenceError
from roster.models.roster import RosterStatus
from roster.services.eligibility import BusEligibility
from roster.services.session import RosterSession, RosterSessionManager
from roster.services.sync import SyncState

from support import AVA, BEN, NY, ROSTER_DATE, et


def make_session(store, feed, clock):
    return RosterSession(
        store, feed, ROSTER_DATE,
        tz=NY, clock=clock, eligibility=BusEligibility.from_settings(), poll_interval=60,
    )


class TestRosterSession:

    @pytest.mark.asyncio
    async def test_own_write_echo_keeps_display_time(self, store, feed, clock, students):
        async with make_session(store, feed, clock) as session:
            clock.set(et(7, 5))
            await session.set_status(AVA, "picked")
            clock.set(et(7, 40))
            await session.set_status(AVA, "arrived")
            clock.set(et(15, 20))
            await session.set_status(AVA, "picked")
            await session.dispatcher.join()

            # The undo restored 07:05 and the feed echo (last_update 15:20) must not replace it
            assert session.state.status_of(AVA) == RosterStatus.PICKED
            assert session.state.time_of(AVA) == et(7, 5)

    @pytest.mark.asyncio
    async def test_back_to_back_actions_keep_operator_pickup_time(self, store, feed, clock, students):
        async with make_session(store, feed, clock) as session:
            clock.set(et(15, 30))
            await asyncio.gather(
                session.set_status(AVA, "picked"),
                session.set_status(AVA, "checked", {"pickup_person": "Jane Doe", "pickup_time": "2024-03-12T15:05"}),
            )
            await session.dispatcher.join()

            assert session.state.status_of(AVA) == RosterStatus.CHECKED
            assert session.state.time_of(AVA) == et(15, 5)

    @pytest.mark.asyncio
    async def test_other_device_write_arrives_through_feed(self, store, feed, clock, students):
        async with make_session(store, feed, clock) as session:
            await store.set_status_authoritative(ROSTER_DATE, BEN, RosterStatus.PICKED, {}, at=et(7, 12))
            await session.dispatcher.join()

            assert session.state.status_of(BEN) == RosterStatus.PICKED
            assert session.state.time_of(BEN) == et(7, 12)

    @pytest.mark.asyncio
    async def test_validation_error_reaches_caller(self, store, feed, clock, students):
        async with make_session(store, feed, clock) as session:
            with pytest.raises(PickupPersonRequired):
                await session.set_status(AVA, "checked", {"pickup_person": ""})

            assert session.dispatcher.running

    @pytest.mark.asyncio
    async def test_terminal_failure_schedules_resync(self, store, feed, clock, students):
        async with make_session(store, feed, clock) as session:
            with patch.object(store, "set_status_authoritative", new=AsyncMock(side_effect=StoreError("rpc down"))), \
                    patch.object(store, "upsert_status", new=AsyncMock(side_effect=StoreError("db down"))), \
                    patch.object(session.sync, "resync", new=AsyncMock()) as resync:
                with pytest.raises(TerminalPersistenceError):
                    await session.set_status(AVA, "picked")
                await session.dispatcher.join()

            resync.assert_awaited()
            assert session.state.status_of(AVA) == RosterStatus.NOT_PICKED

    @pytest.mark.asyncio
    async def test_close_releases_subscription(self, store, feed, clock, students):
        session = await make_session(store, feed, clock).open(visible=True)
        assert feed.subscriber_count(ROSTER_DATE) == 1
        assert session.sync.is_polling

        await session.close()

        assert feed.subscriber_count(ROSTER_DATE) == 0
        assert not session.sync.is_polling
        assert not session.dispatcher.running


class TestRosterSessionManager:

    @pytest.mark.asyncio
    async def test_same_day_reuses_session(self, store, feed, clock, students):
        manager = RosterSessionManager(store, feed, tz=NY, clock=clock, poll_interval=60)

        first = await manager.current()
        clock.set(et(23, 59))
        second = await manager.current()

        assert first is second
        assert first.roster_date == ROSTER_DATE
        await manager.close()

    @pytest.mark.asyncio
    async def test_rollover_replaces_session(self, store, feed, clock, students):
        manager = RosterSessionManager(store, feed, tz=NY, clock=clock, poll_interval=60)
        old = await manager.current()
        await old.set_status(AVA, "picked")

        clock.advance(days=1)
        new = await manager.current()

        assert new is not old
        assert new.roster_date == ROSTER_DATE.replace(day=13)
        assert old.sync.sync_state == SyncState.IDLE
        assert feed.subscriber_count(ROSTER_DATE) == 0
        assert new.state.status_of(AVA) == RosterStatus.NOT_PICKED
        await manager.close()

    @pytest.mark.asyncio
    async def test_visibility_applies_to_current_session(self, store, feed, clock, students):
        manager = RosterSessionManager(store, feed, tz=NY, clock=clock, poll_interval=60, visible=False)
        session = await manager.current()
        assert not session.sync.is_polling

        manager.set_visibility(True)

        assert session.sync.is_polling
        await manager.close()
        assert not session.sync.is_polling


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_snapshot_reflects_state(self, store, feed, clock, students):
        async with make_session(store, feed, clock) as session:
            clock.set(et(7, 5))
            await session.set_status(AVA, "picked")

            snapshot = session.snapshot()

        assert snapshot == {
            "roster_date": "2024-03-12",
            "statuses": {AVA: "picked"},
            "display_times": {AVA: "2024-03-12T11:05:00Z"},
            "picked_once": [AVA],
        }
