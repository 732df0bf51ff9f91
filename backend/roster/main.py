from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine
from typing import Callable, Optional
from datetime import datetime
import uvicorn
import logging
from contextlib import asynccontextmanager

from roster.core.config import settings
from roster.core.database import build_session_factory, engine as default_engine, init_db
from roster.core.timezone import today_roster_date, utc_now
from roster.api.v1 import roster as roster_api
from roster.services.change_feed import ChangeFeed
from roster.services.daily_prepare import DailyPreparation, PrepareMarker
from roster.services.eligibility import BusEligibility
from roster.services.roster_store import SQLAlchemyRosterStore
from roster.services.session import RosterSessionManager
from roster.websocket.live_updates import ConnectionManager

logger = logging.getLogger(__name__)


def configure_logging(level: str = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    bind: Optional[AsyncEngine] = None,
    *,
    clock: Callable[[], datetime] = utc_now,
    marker: Optional[PrepareMarker] = None,
    poll_interval: Optional[float] = None,
) -> FastAPI:
    db_engine = bind or default_engine
    feed = ChangeFeed()
    store = SQLAlchemyRosterStore(build_session_factory(db_engine), feed, clock=clock)
    tz = settings.roster_zone
    sessions = RosterSessionManager(
        store,
        feed,
        tz=tz,
        clock=clock,
        eligibility=BusEligibility.from_settings(),
        poll_interval=poll_interval,
    )
    preparation = DailyPreparation(
        store,
        marker or PrepareMarker(settings.PREPARE_MARKER_PATH, settings.DEVICE_ID),
    )
    live_updates = ConnectionManager(feed, lambda: today_roster_date(tz, clock()))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(db_engine)
        logger.info(f"{settings.APP_NAME} started; roster timezone {settings.ROSTER_TIMEZONE}")

        yield

        await sessions.close()
        if bind is None:
            await db_engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Daily pickup roster with realtime status reconciliation",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.feed = feed
    app.state.store = store
    app.state.sessions = sessions
    app.state.preparation = preparation

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(roster_api.router, prefix="/api/v1/roster", tags=["roster"])
    app.websocket("/ws/roster")(live_updates.websocket_endpoint)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": "1.0.0"}

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        logger.exception(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "status_code": 500}
        )

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "roster.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info" if not settings.DEBUG else "debug"
    )
