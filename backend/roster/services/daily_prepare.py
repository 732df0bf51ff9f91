"""
Once-per-device-per-day roster preparation.

Before anyone touches today's roster, students with no bus on this weekday
are bulk-marked ``skipped``. A local marker keeps a device from re-running
it, and a row count check keeps a second device from running it after the
first one already did.
"""
import json
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

from roster.services.roster_store import RosterStore

logger = logging.getLogger(__name__)


class PrepareOutcome(str, Enum):
    ALREADY_MARKED = "already_marked"
    ALREADY_PREPARED = "already_prepared"
    PREPARED = "prepared"


@dataclass(frozen=True)
class PrepareResult:
    roster_date: date
    outcome: PrepareOutcome
    rows_written: int = 0


class PrepareMarker:
    """Per-device record of the last roster date prepared, kept in a JSON file."""

    def __init__(self, path: Union[str, Path], device_id: str):
        self.path = Path(path)
        self.device_id = device_id

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable prepare marker {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def last_prepared(self) -> Optional[date]:
        value = self._read().get(self.device_id)
        if not value:
            return None
        try:
            return date.fromisoformat(value)
        except ValueError:
            return None

    def mark(self, roster_date: date) -> None:
        data = self._read()
        data[self.device_id] = roster_date.isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


class DailyPreparation:
    def __init__(self, store: RosterStore, marker: PrepareMarker):
        self.store = store
        self.marker = marker

    async def run(self, roster_date: date) -> PrepareResult:
        if self.marker.last_prepared() == roster_date:
            return PrepareResult(roster_date, PrepareOutcome.ALREADY_MARKED)

        existing = await self.store.count_statuses(roster_date)
        if existing > 0:
            logger.info(f"Roster for {roster_date} already has {existing} rows; skipping preparation")
            self.marker.mark(roster_date)
            return PrepareResult(roster_date, PrepareOutcome.ALREADY_PREPARED)

        written = await self.store.prepare_day(roster_date)
        self.marker.mark(roster_date)
        return PrepareResult(roster_date, PrepareOutcome.PREPARED, rows_written=written)
