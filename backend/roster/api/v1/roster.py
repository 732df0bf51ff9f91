"""
API endpoints for today's pickup roster.
"""
from fastapi import APIRouter, HTTPException, Depends, Request, status
from typing import Optional, List
import logging

from roster.core.config import settings
from roster.core.exceptions import StoreError, TerminalPersistenceError, UnknownStudent, ValidationError
from roster.core.timezone import format_display_time
from roster.models.roster import RosterStatus
from roster.schemas.roster import (
    LogEntryResponse, PrepareResponse, RosterEntryResponse, RosterSnapshotResponse,
    SetStatusRequest, StatusChangeResponse, StudentResponse, VisibilityRequest
)
from roster.services.daily_prepare import DailyPreparation
from roster.services.roster_store import RosterStore
from roster.services.session import RosterSessionManager

logger = logging.getLogger(__name__)

router = APIRouter()


def get_sessions(request: Request) -> RosterSessionManager:
    return request.app.state.sessions


def get_store(request: Request) -> RosterStore:
    return request.app.state.store


def get_preparation(request: Request) -> DailyPreparation:
    return request.app.state.preparation


def _store_unavailable(e: Exception) -> HTTPException:
    logger.error(f"Roster store unavailable: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Roster store is unavailable, please retry"
    )


@router.get("", response_model=RosterSnapshotResponse)
async def get_roster(sessions: RosterSessionManager = Depends(get_sessions)):
    """Today's statuses and display times as this service currently sees them."""
    session = await sessions.current()
    state = session.state
    entries = [
        RosterEntryResponse(
            student_id=student_id,
            status=st,
            display_time=state.time_of(student_id),
            display_time_local=(
                format_display_time(state.time_of(student_id), sessions.tz)
                if state.time_of(student_id) else None
            ),
            picked_today=student_id in state.picked_once,
        )
        for student_id, st in sorted(state.statuses.items())
    ]
    return RosterSnapshotResponse(
        roster_date=state.roster_date,
        timezone=settings.ROSTER_TIMEZONE,
        entries=entries,
        counts=state.counts(),
    )


@router.post("/visibility")
async def set_visibility(body: VisibilityRequest, sessions: RosterSessionManager = Depends(get_sessions)):
    """Suspend or resume background polling while the roster view is hidden."""
    sessions.set_visibility(body.visible)
    return {"visible": body.visible}


@router.get("/students", response_model=List[StudentResponse])
async def list_students(store: RosterStore = Depends(get_store)):
    try:
        return await store.fetch_active_students()
    except StoreError as e:
        raise _store_unavailable(e)


@router.get("/logs", response_model=List[LogEntryResponse])
async def list_logs(
    student_id: Optional[str] = None,
    action: Optional[RosterStatus] = None,
    sessions: RosterSessionManager = Depends(get_sessions),
    store: RosterStore = Depends(get_store),
):
    try:
        return await store.fetch_logs(
            sessions.today(),
            student_id=student_id,
            action=action.value if action else None,
        )
    except StoreError as e:
        raise _store_unavailable(e)


@router.post("/prepare", response_model=PrepareResponse)
async def prepare_today(
    sessions: RosterSessionManager = Depends(get_sessions),
    preparation: DailyPreparation = Depends(get_preparation),
):
    """Apply weekday skip defaults, at most once per device per day."""
    try:
        result = await preparation.run(sessions.today())
    except StoreError as e:
        raise _store_unavailable(e)
    return PrepareResponse(
        roster_date=result.roster_date,
        outcome=result.outcome.value,
        rows_written=result.rows_written,
    )


@router.post("/{student_id}/status", response_model=StatusChangeResponse)
async def set_student_status(
    student_id: str,
    body: SetStatusRequest,
    sessions: RosterSessionManager = Depends(get_sessions),
):
    """Move a student to a new status (pick up, check in, check out, skip, or undo)."""
    session = await sessions.current()
    try:
        change = await session.set_status(student_id, body.status, body.meta)
    except UnknownStudent as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except TerminalPersistenceError as e:
        logger.error(f"Status change for {student_id} was not saved: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
    except StoreError as e:
        raise _store_unavailable(e)

    return StatusChangeResponse(
        student_id=change.student_id,
        previous=change.previous,
        status=change.status,
        direction=change.direction.value,
        display_time=change.display_time,
        display_time_local=format_display_time(change.display_time, sessions.tz),
        write_path=change.write_path,
        log_appended=change.log_appended,
    )
