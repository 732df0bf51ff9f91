from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy import MetaData
from typing import Optional

from roster.core.config import settings


class Base(DeclarativeBase):
    metadata = MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s"
        }
    )


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    kwargs = {"echo": echo, "future": True}
    if url.startswith("sqlite") and ":memory:" in url:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)


async def init_db(bind: Optional[AsyncEngine] = None):
    # Registers the roster tables on Base.metadata
    from roster import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
