from sqlalchemy import Column, Integer, String, Boolean, JSON
from sqlalchemy.orm import relationship
import uuid

from roster.core.database import Base
from roster.models.types import UTCDateTime, utcnow


# Weekday letters used by no_bus_days, Monday first
WEEKDAY_LETTERS = ("M", "T", "W", "R", "F")


class Student(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    room_id = Column(Integer, nullable=True)
    school = Column(String(20), nullable=False)
    school_year = Column(String(50), nullable=True)  # program, e.g. "FT - A"

    # Display only; order is preserved
    approved_pickups = Column(JSON, nullable=False, default=list)
    no_bus_days = Column(JSON, nullable=False, default=list)

    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    statuses = relationship("RosterStatusEntry", back_populates="student")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def skips_bus_on(self, weekday: int) -> bool:
        """True when the student has no bus on ``weekday`` (Monday == 0)."""
        if weekday >= len(WEEKDAY_LETTERS):
            return False
        return WEEKDAY_LETTERS[weekday] in (self.no_bus_days or [])
