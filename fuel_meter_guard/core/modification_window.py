"""
Modification window for recorded readings.

A reading may be edited until the cutoff hour (06:00 by default, station
local time) of the next business day. Friday and Saturday readings stay
open until Monday. After the cutoff only a manager override can change a
reading, and the override is written into the reading's notes.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Callable, Optional

from .clock import Clock
from .errors import (
    AuthorizationError,
    CapacityError,
    NotFoundError,
    ValidationError,
    WindowExpiredError,
    require_decimal,
)
from .permissions import Actor, can_override_window, require_reading_writer, require_station_access
from fuel_meter_guard.storage.models import MeterReading, quantize_volume
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)

FRIDAY = 4
SATURDAY = 5


def next_business_day(reading_date: date) -> date:
    """Day after reading_date, skipping the weekend for Friday and Saturday."""
    weekday = reading_date.weekday()
    if weekday == FRIDAY:
        return reading_date + timedelta(days=3)
    if weekday == SATURDAY:
        return reading_date + timedelta(days=2)
    return reading_date + timedelta(days=1)


def edit_deadline(reading_date: date, tz: tzinfo, cutoff_hour: int = 6) -> datetime:
    """Instant at which edits to a reading for reading_date lock."""
    return datetime.combine(next_business_day(reading_date), time(hour=cutoff_hour), tzinfo=tz)


@dataclass(frozen=True)
class ManagerOverride:
    """A manager's authorization to edit a reading past its cutoff."""
    manager: Actor
    reason: str


class ModificationWindowGuard:
    """Applies edits to existing readings within the modification window."""

    def __init__(
        self,
        repository: MeterRepository,
        clock: Clock,
        tz: tzinfo,
        cutoff_hour: int = 6,
        after_commit: Optional[Callable[[int, date], object]] = None,
    ):
        self.repository = repository
        self.clock = clock
        self.tz = tz
        self.cutoff_hour = cutoff_hour
        self.after_commit = after_commit

    def deadline(self, reading: MeterReading) -> datetime:
        return edit_deadline(reading.reading_date, self.tz, self.cutoff_hour)

    def can_modify(self, reading: MeterReading, now: Optional[datetime] = None) -> bool:
        """Whether a non-override edit would be accepted at now."""
        now = now if now is not None else self.clock.now()
        return now < self.deadline(reading)

    def update(
        self,
        reading_id: int,
        new_value,
        actor: Optional[Actor],
        override: Optional[ManagerOverride] = None,
        notes: Optional[str] = None,
    ) -> MeterReading:
        """Edit a reading's meter value.

        Args:
            reading_id: Reading to edit
            new_value: Replacement meter value
            actor: Caller; directors are refused
            override: Manager identity and reason, required after the cutoff
            notes: Replacement notes; existing notes are kept when None

        Returns:
            The updated reading

        Raises:
            NotFoundError: If the reading or its pump does not exist
            AuthorizationError: If the caller is blocked or the override is not a manager's
            WindowExpiredError: If the cutoff has passed and no override is given
            CapacityError: If the new value exceeds the pump capacity
        """
        # One clock read per request: the same instant decides the cutoff
        # and stamps modified_at.
        now = self.clock.now()
        value = quantize_volume(require_decimal(new_value, "meter_value"))

        reading = self.repository.get_reading(reading_id)
        if reading is None:
            raise NotFoundError(f"Meter reading {reading_id} not found")
        pump = self.repository.get_pump(reading.pump_id)
        if pump is None:
            raise NotFoundError(f"Pump {reading.pump_id} not found")
        actor = require_reading_writer(actor, pump.station_id)

        if override is not None:
            if not can_override_window(override.manager):
                raise AuthorizationError("Modification window override requires a manager")
            require_station_access(override.manager, pump.station_id)
            if not override.reason or not override.reason.strip():
                raise ValidationError("A reason is required for a manager override")

        deadline = self.deadline(reading)
        if now >= deadline and override is None:
            raise WindowExpiredError(deadline)
        if value > pump.meter_capacity:
            raise CapacityError(value, pump.meter_capacity)

        new_notes = notes if notes is not None else reading.notes
        modified_by = actor.user_id
        if override is not None:
            new_notes = f"{new_notes or ''}\n[MANAGER OVERRIDE: {override.reason.strip()}]".strip()
            modified_by = override.manager.user_id

        updated = replace(
            reading,
            meter_value=value,
            notes=new_notes,
            is_modified=True,
            original_value=reading.original_value if reading.is_modified else reading.meter_value,
            modified_by=modified_by,
            modified_at=now,
        )
        saved = self.repository.save_reading(updated)

        logger.info(
            "Reading %s changed %s -> %s by %s%s",
            reading_id, reading.meter_value, value, modified_by,
            " (manager override)" if override is not None else "",
        )
        if self.after_commit is not None:
            self.after_commit(reading.pump_id, reading.reading_date)
        return saved
