from pydantic import BaseModel, Field, validator
from datetime import date, datetime
from typing import Optional, List, Dict, Any
from enum import Enum

from roster.models.roster import RosterStatus


class ChangeEventType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# Change feed payload
class RosterChangeEvent(BaseModel):
    """Row-level change on roster_status, as delivered by the change feed."""
    event_type: ChangeEventType
    roster_date: date
    student_id: str
    current_status: Optional[RosterStatus] = None
    last_update: Optional[datetime] = None

    @validator("current_status", always=True)
    def status_required_unless_delete(cls, v, values):
        if v is None and values.get("event_type") != ChangeEventType.DELETE:
            raise ValueError("current_status is required for insert and update events")
        return v


# Status change requests
class SetStatusRequest(BaseModel):
    status: RosterStatus
    meta: Dict[str, Any] = Field(default_factory=dict, description="pickup_person, override, pickup_time, source")


class VisibilityRequest(BaseModel):
    visible: bool


class StatusChangeResponse(BaseModel):
    student_id: str
    previous: RosterStatus
    status: RosterStatus
    direction: str
    display_time: datetime
    display_time_local: str
    write_path: str
    log_appended: bool


# Roster snapshot
class RosterEntryResponse(BaseModel):
    student_id: str
    status: RosterStatus
    display_time: Optional[datetime] = None
    display_time_local: Optional[str] = None
    picked_today: bool = False


class RosterSnapshotResponse(BaseModel):
    roster_date: date
    timezone: str
    entries: List[RosterEntryResponse]
    counts: Dict[str, int]


class StudentResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    school: str
    school_year: Optional[str] = None
    room_id: Optional[int] = None
    approved_pickups: List[str] = []
    no_bus_days: List[str] = []
    active: bool = True

    class Config:
        from_attributes = True


class LogEntryResponse(BaseModel):
    id: int
    at: datetime
    roster_date: date
    student_id: str
    student_name: Optional[str] = None
    action: str
    pickup_person: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class PrepareResponse(BaseModel):
    roster_date: date
    outcome: str
    rows_written: int = 0
