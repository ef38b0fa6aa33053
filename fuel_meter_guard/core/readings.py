"""
Meter reading store.

Records opening and closing readings, one per pump, date and type, and
hands completed writes to the post-commit hook.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

from .clock import Clock
from .errors import (
    AuthorizationError,
    CapacityError,
    ConflictError,
    MeterGuardError,
    NotFoundError,
    ValidationError,
    require_decimal,
)
from .permissions import Actor, require_authenticated, require_reading_writer, require_station_access
from fuel_meter_guard.storage.models import (
    EstimationMethod,
    MeterReading,
    PumpStatus,
    ReadingType,
    quantize_volume,
)
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)

AfterCommit = Callable[[int, date], object]


def parse_reading_type(value) -> ReadingType:
    """Accept a ReadingType or its string value."""
    if isinstance(value, ReadingType):
        return value
    try:
        return ReadingType(str(value).lower())
    except ValueError:
        raise ValidationError("reading_type must be 'opening' or 'closing'")


@dataclass
class BulkRecordResult:
    """Outcome of a bulk write: how many succeeded, and why the rest failed."""
    recorded_count: int = 0
    readings: List[MeterReading] = field(default_factory=list)
    errors: List[Tuple[int, str]] = field(default_factory=list)


@dataclass(frozen=True)
class PumpReadingStatus:
    """Which readings a pump has for a business day."""
    pump_id: int
    label: str
    has_opening: bool
    has_closing: bool
    opening_value: Optional[Decimal] = None
    closing_value: Optional[Decimal] = None
    opening_time: Optional[datetime] = None
    closing_time: Optional[datetime] = None


class ReadingStore:
    """Owns the lifecycle of meter readings up to their first edit."""

    def __init__(
        self,
        repository: MeterRepository,
        clock: Clock,
        after_commit: Optional[AfterCommit] = None,
    ):
        self.repository = repository
        self.clock = clock
        self.after_commit = after_commit

    def record(
        self,
        pump_id: int,
        reading_date: date,
        reading_type,
        meter_value,
        actor: Optional[Actor],
        notes: Optional[str] = None,
        is_estimated: bool = False,
        estimation_method: Optional[EstimationMethod] = None,
    ) -> MeterReading:
        """Record a new opening or closing reading.

        Args:
            pump_id: Pump the meter belongs to
            reading_date: Business day of the reading
            reading_type: 'opening' or 'closing'
            meter_value: Meter value, between 0 and the pump capacity
            actor: Caller; directors are refused
            notes: Optional free text
            is_estimated: Whether the value itself is an estimate
            estimation_method: How an estimated value was obtained

        Returns:
            The stored reading

        Raises:
            ValidationError: If the input is malformed
            NotFoundError: If the pump does not exist
            AuthorizationError: If the caller is blocked or the pump is inactive
            ConflictError: If a reading already exists for the key
            CapacityError: If meter_value exceeds the pump capacity
        """
        reading_type = parse_reading_type(reading_type)
        value = quantize_volume(require_decimal(meter_value, "meter_value"))
        if estimation_method is not None and not is_estimated:
            raise ValidationError("estimation_method requires is_estimated")

        pump = self.repository.get_pump(pump_id)
        if pump is None:
            raise NotFoundError(f"Pump {pump_id} not found")
        actor = require_reading_writer(actor, pump.station_id)
        if not pump.is_active or pump.status != PumpStatus.ACTIVE:
            raise AuthorizationError(f"Pump {pump.label} is not active")

        if self.repository.find_reading(pump_id, reading_date, reading_type) is not None:
            raise ConflictError("Reading already exists for this pump, date, and type")
        if value > pump.meter_capacity:
            raise CapacityError(value, pump.meter_capacity)

        try:
            reading = self.repository.insert_reading(
                pump_id=pump_id,
                reading_date=reading_date,
                reading_type=reading_type,
                meter_value=value,
                recorded_by=actor.user_id,
                recorded_at=self.clock.now(),
                is_estimated=is_estimated,
                estimation_method=estimation_method,
                notes=notes,
            )
        except sqlite3.IntegrityError:
            raise ConflictError("Reading already exists for this pump, date, and type")

        logger.info(
            "Recorded %s reading %s for pump %s on %s by %s",
            reading_type.value, value, pump_id, reading_date, actor.user_id,
        )
        if self.after_commit is not None:
            self.after_commit(pump_id, reading_date)
        return reading

    def record_bulk(
        self,
        station_id: str,
        reading_date: date,
        reading_type,
        entries: Iterable[Mapping],
        actor: Optional[Actor],
    ) -> BulkRecordResult:
        """Record one reading per entry; each entry succeeds or fails alone.

        Args:
            station_id: Station all pumps must belong to
            reading_date: Business day of the readings
            reading_type: 'opening' or 'closing'
            entries: Mappings with pump_id, meter_value and optional notes
            actor: Caller; directors are refused

        Returns:
            BulkRecordResult with per-pump error messages
        """
        reading_type = parse_reading_type(reading_type)
        actor = require_reading_writer(actor, station_id)
        entries = list(entries)
        if not entries:
            raise ValidationError("At least one reading is required")

        result = BulkRecordResult()
        for entry in entries:
            pump_id = entry.get("pump_id")
            try:
                pump = self.repository.get_pump(pump_id)
                if pump is None or pump.station_id != station_id:
                    raise NotFoundError(f"Pump {pump_id} not found at station {station_id}")
                reading = self.record(
                    pump_id, reading_date, reading_type, entry.get("meter_value"),
                    actor, notes=entry.get("notes"),
                )
            except MeterGuardError as e:
                result.errors.append((pump_id, str(e)))
                continue
            result.recorded_count += 1
            result.readings.append(reading)
        return result

    def get(
        self,
        station_id: str,
        start_date: date,
        end_date: date,
        pump_id: Optional[int] = None,
        actor: Optional[Actor] = None,
    ) -> List[MeterReading]:
        """Read-only listing of readings for a station and date range."""
        if actor is not None:
            require_station_access(require_authenticated(actor), station_id)
        if start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        return self.repository.list_readings(station_id, start_date, end_date, pump_id)

    def daily_status(self, station_id: str, reading_date: date) -> List[PumpReadingStatus]:
        """Which active pumps still lack an opening or closing reading."""
        statuses = []
        for pump in self.repository.list_pumps(station_id, active_only=True):
            by_type = {r.reading_type: r for r in self.repository.readings_for_day(pump.id, reading_date)}
            opening = by_type.get(ReadingType.OPENING)
            closing = by_type.get(ReadingType.CLOSING)
            statuses.append(PumpReadingStatus(
                pump_id=pump.id,
                label=pump.label,
                has_opening=opening is not None,
                has_closing=closing is not None,
                opening_value=opening.meter_value if opening else None,
                closing_value=closing.meter_value if closing else None,
                opening_time=opening.recorded_at if opening else None,
                closing_time=closing.recorded_at if closing else None,
            ))
        return statuses
