"""Shared fixtures: in-memory SQLite store, hand-driven clock, seeded students."""

import pytest
import pytest_asyncio

from roster.core.database import build_engine, build_session_factory, init_db
from roster.models.student import Student
from roster.services.change_feed import ChangeFeed
from roster.services.roster_store import SQLAlchemyRosterStore

from support import AVA, BEN, CY, DEE, FakeClock, et


@pytest.fixture
def clock():
    return FakeClock(et(7, 0))


@pytest_asyncio.fixture
async def db_engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(session_factory, feed, clock):
    return SQLAlchemyRosterStore(session_factory, feed, clock=clock)


@pytest_asyncio.fixture
async def students(session_factory):
    """Two bus riders, one center-only student and one inactive student."""
    rows = [
        Student(
            id=AVA, first_name="Ava", last_name="Jones", school="Bain",
            school_year="FT - A", room_id=1,
            approved_pickups=["Jane Doe", "John Doe"], no_bus_days=["T"], active=True,
        ),
        Student(
            id=BEN, first_name="Ben", last_name="Li", school="QG",
            school_year="FT - B/A", room_id=2,
            approved_pickups=["Mei Li"], no_bus_days=[], active=True,
        ),
        Student(
            id=CY, first_name="Cy", last_name="Park", school="MC",
            school_year="After Care", room_id=3,
            approved_pickups=[], no_bus_days=[], active=True,
        ),
        Student(
            id=DEE, first_name="Dee", last_name="Ng", school="MHE",
            school_year="FT - A", room_id=None,
            approved_pickups=[], no_bus_days=["T"], active=False,
        ),
    ]
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()
    return {row.id: row for row in rows}
