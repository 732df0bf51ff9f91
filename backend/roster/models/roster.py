from sqlalchemy import Column, Integer, String, Date, ForeignKey, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.orm import relationship
import enum

from roster.core.database import Base
from roster.core.exceptions import ValidationError
from roster.models.types import UTCDateTime, utcnow


class RosterStatus(str, enum.Enum):
    NOT_PICKED = "not_picked"
    PICKED = "picked"
    ARRIVED = "arrived"
    CHECKED = "checked"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value) -> "RosterStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown status: {value!r}")


class RosterStatusEntry(Base):
    """Current status of one student on one roster day."""

    __tablename__ = "roster_status"
    __table_args__ = (
        UniqueConstraint("roster_date", "student_id", name="uq_roster_status_day_student"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    roster_date = Column(Date, nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    current_status = Column(
        SQLEnum(RosterStatus, values_callable=lambda e: [m.value for m in e], name="status"),
        nullable=False,
        default=RosterStatus.NOT_PICKED,
    )
    last_update = Column(UTCDateTime, nullable=False, default=utcnow)

    student = relationship("Student", back_populates="statuses")
