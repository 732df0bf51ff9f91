"""Tests for engine and session factory construction."""

import pytest
from sqlalchemy import inspect, select

from roster.core import database
from roster.core.database import build_engine, build_session_factory, init_db
from roster.models.student import Student


class TestDatabase:

    @pytest.mark.asyncio
    async def test_init_db_creates_roster_tables(self):
        engine = build_engine("sqlite+aiosqlite:///:memory:")
        try:
            await init_db(engine)
            async with engine.connect() as conn:
                tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        finally:
            await engine.dispose()

        assert {"students", "roster_status", "logs"} <= set(tables)

    @pytest.mark.asyncio
    async def test_session_factory_shares_in_memory_database(self):
        engine = build_engine("sqlite+aiosqlite:///:memory:")
        try:
            await init_db(engine)
            factory = build_session_factory(engine)
            async with factory() as session:
                session.add(Student(id="stu-1", first_name="Ava", last_name="Jones", school="Bain"))
                await session.commit()
            async with factory() as session:
                names = (await session.execute(select(Student.first_name))).scalars().all()
        finally:
            await engine.dispose()

        assert names == ["Ava"]

    def test_sessions_come_from_the_factory_only(self):
        assert not hasattr(database, "AsyncSessionLocal")
