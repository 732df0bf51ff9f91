from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

from roster.core.config import settings


@dataclass(frozen=True)
class BusEligibility:
    """Which students ride the bus, and can therefore be skipped for a day."""
    schools: FrozenSet[str]
    school_years: FrozenSet[str]

    @classmethod
    def from_settings(
        cls,
        schools: Optional[Iterable[str]] = None,
        school_years: Optional[Iterable[str]] = None,
    ) -> "BusEligibility":
        return cls(
            schools=frozenset(schools if schools is not None else settings.BUS_SCHOOLS),
            school_years=frozenset(school_years if school_years is not None else settings.BUS_SCHOOL_YEARS),
        )

    def is_eligible(self, student) -> bool:
        if not getattr(student, "active", False):
            return False
        if student.school not in self.schools:
            return False
        return (student.school_year or "") in self.school_years
