"""
Read/write contract between the roster engine and the relational store.

``set_status_authoritative`` is the primary write path: one transaction that
upserts the day's status row and appends the audit log entry. ``upsert_status``
and ``insert_log`` are the two independent fallback writes used when the
authoritative call fails.
"""
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

from sqlalchemy import select, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster.core.exceptions import StoreError, UnknownStudent
from roster.core.timezone import utc_now
from roster.models.log import LogEntry
from roster.models.roster import RosterStatus, RosterStatusEntry
from roster.models.student import Student
from roster.schemas.roster import ChangeEventType, RosterChangeEvent
from roster.services.change_feed import ChangeFeed

logger = logging.getLogger(__name__)


class RosterStore(Protocol):
    async def fetch_active_students(self) -> Sequence[Student]:
        raise NotImplementedError

    async def get_student(self, student_id: str) -> Optional[Student]:
        raise NotImplementedError

    async def fetch_statuses(self, roster_date: date) -> Sequence[RosterStatusEntry]:
        raise NotImplementedError

    async def fetch_logs(
        self,
        roster_date: date,
        *,
        student_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Sequence[LogEntry]:
        raise NotImplementedError

    async def earliest_log_at(self, roster_date: date, student_id: str, action: str) -> Optional[datetime]:
        raise NotImplementedError

    async def count_statuses(self, roster_date: date) -> int:
        raise NotImplementedError

    async def set_status_authoritative(
        self,
        roster_date: date,
        student_id: str,
        status: RosterStatus,
        meta: Dict[str, Any],
        *,
        pickup_person: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        raise NotImplementedError

    async def upsert_status(
        self,
        roster_date: date,
        student_id: str,
        status: RosterStatus,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        raise NotImplementedError

    async def insert_log(
        self,
        roster_date: date,
        student_id: str,
        action: str,
        meta: Optional[Dict[str, Any]],
        *,
        pickup_person: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        raise NotImplementedError

    async def prepare_day(self, roster_date: date) -> int:
        """Bulk-apply ``skipped`` for students with no bus on that weekday."""
        raise NotImplementedError


class SQLAlchemyRosterStore:
    """Roster store backed by an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._feed = feed
        self._clock = clock

    # Queries

    async def fetch_active_students(self) -> Sequence[Student]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Student)
                    .where(Student.active.is_(True))
                    .order_by(Student.first_name, Student.last_name)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch students: {e}") from e

    async def get_student(self, student_id: str) -> Optional[Student]:
        try:
            async with self._session_factory() as session:
                return await session.get(Student, student_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch student {student_id}: {e}") from e

    async def fetch_statuses(self, roster_date: date) -> Sequence[RosterStatusEntry]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RosterStatusEntry).where(RosterStatusEntry.roster_date == roster_date)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch roster for {roster_date}: {e}") from e

    async def fetch_logs(
        self,
        roster_date: date,
        *,
        student_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Sequence[LogEntry]:
        conditions = [LogEntry.roster_date == roster_date]
        if student_id is not None:
            conditions.append(LogEntry.student_id == student_id)
        if action is not None:
            conditions.append(LogEntry.action == _action_value(action))

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(LogEntry)
                    .where(and_(*conditions))
                    .order_by(LogEntry.at.asc(), LogEntry.id.asc())
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch logs for {roster_date}: {e}") from e

    async def earliest_log_at(self, roster_date: date, student_id: str, action: str) -> Optional[datetime]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(LogEntry.at)
                    .where(
                        and_(
                            LogEntry.roster_date == roster_date,
                            LogEntry.student_id == student_id,
                            LogEntry.action == _action_value(action),
                        )
                    )
                    .order_by(LogEntry.at.asc(), LogEntry.id.asc())
                    .limit(1)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query log history for {student_id}: {e}") from e

    async def count_statuses(self, roster_date: date) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(func.count(RosterStatusEntry.id)).where(RosterStatusEntry.roster_date == roster_date)
                )
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count roster rows for {roster_date}: {e}") from e

    # Writes

    async def set_status_authoritative(
        self,
        roster_date: date,
        student_id: str,
        status: RosterStatus,
        meta: Dict[str, Any],
        *,
        pickup_person: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        at = at or self._clock()
        status = RosterStatus.parse(status)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    student = await _require_student(session, student_id)
                    event_type = await self._upsert(session, roster_date, student_id, status, at)
                    session.add(_log_entry(roster_date, student_id, status.value, meta, pickup_person, at, student))
        except SQLAlchemyError as e:
            raise StoreError(f"Authoritative status write failed for {student_id}: {e}") from e

        await self._publish(event_type, roster_date, student_id, status, at)

    async def upsert_status(
        self,
        roster_date: date,
        student_id: str,
        status: RosterStatus,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        at = at or self._clock()
        status = RosterStatus.parse(status)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await _require_student(session, student_id)
                    event_type = await self._upsert(session, roster_date, student_id, status, at)
        except SQLAlchemyError as e:
            raise StoreError(f"Status upsert failed for {student_id}: {e}") from e

        await self._publish(event_type, roster_date, student_id, status, at)

    async def insert_log(
        self,
        roster_date: date,
        student_id: str,
        action: str,
        meta: Optional[Dict[str, Any]],
        *,
        pickup_person: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        at = at or self._clock()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    student = await session.get(Student, student_id)
                    session.add(_log_entry(roster_date, student_id, _action_value(action), meta, pickup_person, at, student))
        except SQLAlchemyError as e:
            raise StoreError(f"Log insert failed for {student_id}: {e}") from e

    async def prepare_day(self, roster_date: date) -> int:
        at = self._clock()
        weekday = roster_date.weekday()
        written = []
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    students = (await session.execute(
                        select(Student).where(Student.active.is_(True))
                    )).scalars().all()
                    existing = set((await session.execute(
                        select(RosterStatusEntry.student_id).where(RosterStatusEntry.roster_date == roster_date)
                    )).scalars().all())

                    for student in students:
                        if student.id in existing or not student.skips_bus_on(weekday):
                            continue
                        session.add(RosterStatusEntry(
                            roster_date=roster_date,
                            student_id=student.id,
                            current_status=RosterStatus.SKIPPED,
                            last_update=at,
                        ))
                        session.add(_log_entry(
                            roster_date,
                            student.id,
                            RosterStatus.SKIPPED.value,
                            {"source": "auto_dow", "prev_status": RosterStatus.NOT_PICKED.value, "prev_time": None},
                            None,
                            at,
                            student,
                        ))
                        written.append(student.id)
        except SQLAlchemyError as e:
            raise StoreError(f"Daily preparation failed for {roster_date}: {e}") from e

        for student_id in written:
            await self._publish(ChangeEventType.INSERT, roster_date, student_id, RosterStatus.SKIPPED, at)
        logger.info(f"Prepared roster for {roster_date}: {len(written)} students skipped by weekday")
        return len(written)

    async def _upsert(
        self,
        session: AsyncSession,
        roster_date: date,
        student_id: str,
        status: RosterStatus,
        at: datetime,
    ) -> ChangeEventType:
        result = await session.execute(
            select(RosterStatusEntry).where(
                and_(
                    RosterStatusEntry.roster_date == roster_date,
                    RosterStatusEntry.student_id == student_id,
                )
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            session.add(RosterStatusEntry(
                roster_date=roster_date,
                student_id=student_id,
                current_status=status,
                last_update=at,
            ))
            return ChangeEventType.INSERT

        entry.current_status = status
        entry.last_update = at
        return ChangeEventType.UPDATE

    async def _publish(
        self,
        event_type: ChangeEventType,
        roster_date: date,
        student_id: str,
        status: RosterStatus,
        at: datetime,
    ) -> None:
        if self._feed is None:
            return
        await self._feed.publish(RosterChangeEvent(
            event_type=event_type,
            roster_date=roster_date,
            student_id=student_id,
            current_status=status,
            last_update=at,
        ))


async def _require_student(session: AsyncSession, student_id: str) -> Student:
    student = await session.get(Student, student_id)
    if student is None:
        raise UnknownStudent(student_id)
    return student


def _action_value(action) -> str:
    return action.value if isinstance(action, RosterStatus) else str(action)


def _log_entry(
    roster_date: date,
    student_id: str,
    action: str,
    meta: Optional[Dict[str, Any]],
    pickup_person: Optional[str],
    at: datetime,
    student: Optional[Student],
) -> LogEntry:
    return LogEntry(
        at=at,
        roster_date=roster_date,
        student_id=student_id,
        student_name=student.full_name if student is not None else None,
        room_id=student.room_id if student is not None else None,
        school=student.school if student is not None else None,
        action=action,
        pickup_person=pickup_person,
        meta=dict(meta) if meta else None,
    )
