from sqlalchemy import Column, Integer, String, Date, Text, JSON, Index

from roster.core.database import Base
from roster.models.types import UTCDateTime, utcnow


class LogEntry(Base):
    """
    Append-only audit trail of status transitions.

    The earliest ``at`` per (roster_date, student_id, action) is the time a
    status was first reached that day; ``roster_status.last_update`` only
    reflects the latest write.
    """

    __tablename__ = "logs"
    __table_args__ = (
        Index("logs_by_date", "roster_date", "at"),
        Index("logs_by_student", "student_id", "at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    at = Column(UTCDateTime, nullable=False, default=utcnow)
    roster_date = Column(Date, nullable=False)
    student_id = Column(String(36), nullable=False)

    # Snapshot of the student when the entry was written
    student_name = Column(String(200), nullable=True)
    room_id = Column(Integer, nullable=True)
    school = Column(String(20), nullable=True)

    action = Column(String(30), nullable=False)
    pickup_person = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)  # prev_status, prev_time, pickup_time, source
