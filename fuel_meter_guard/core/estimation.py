"""
Estimation of daily volume when meter readings are missing.

Fallback order:
1. Transaction-based - the legacy sales ledger has PMS quantity for the
   station and date
2. Historical average - mean of the pump's most recent actual calculations
3. Manual - flagged for operator attention, using whatever history exists
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from .collaborators import TransactionLedger
from .deviation import mean_volume
from fuel_meter_guard.config.loader import EstimationConfig
from fuel_meter_guard.storage.models import (
    EstimationMethod,
    MeterReading,
    PumpConfiguration,
    quantize_volume,
)
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0.0")


@dataclass(frozen=True)
class Estimate:
    """Estimated volume with the meter values it implies."""
    volume: Decimal
    opening: Decimal
    closing: Decimal
    method: EstimationMethod
    has_rollover: bool = False
    needs_attention: bool = False
    note: Optional[str] = None


class EstimationEngine:
    """Tiered volume estimation for a pump and date."""

    def __init__(
        self,
        repository: MeterRepository,
        ledger: TransactionLedger,
        config: EstimationConfig,
    ):
        self.repository = repository
        self.ledger = ledger
        self.config = config

    def estimate_volume(
        self,
        pump: PumpConfiguration,
        calculation_date: date,
        station_pump_count: int = 1,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Tuple[Decimal, EstimationMethod, bool]:
        """Pick a volume from the first tier that has data.

        Args:
            pump: Pump being estimated
            calculation_date: Business day being estimated
            station_pump_count: Active pumps sharing the station's ledger quantity
            conn: Optional connection to read through

        Returns:
            Tuple of (volume, tier used, needs operator attention)
        """
        quantity = self.ledger.pms_quantity(pump.station_id, calculation_date)
        if quantity is not None and quantity > 0:
            share = quantity / Decimal(max(station_pump_count, 1))
            return quantize_volume(share), EstimationMethod.TRANSACTION_BASED, False

        actual = self.repository.recent_calculations(
            pump.id,
            before_date=calculation_date,
            limit=self.config.history_size,
            actual_only=True,
            conn=conn,
        )
        average = mean_volume(actual)
        if average is not None:
            return quantize_volume(average), EstimationMethod.HISTORICAL_AVERAGE, False

        any_history = self.repository.recent_calculations(
            pump.id,
            before_date=calculation_date,
            limit=self.config.history_size,
            actual_only=False,
            conn=conn,
        )
        fallback = mean_volume(any_history)
        return quantize_volume(fallback if fallback is not None else ZERO), EstimationMethod.MANUAL, True

    def estimate(
        self,
        pump: PumpConfiguration,
        calculation_date: date,
        opening: Optional[MeterReading],
        closing: Optional[MeterReading],
        station_pump_count: int = 1,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Estimate:
        """Estimate a day with one or both readings missing.

        The known reading is kept and the missing one is derived from the
        estimated volume, wrapping at the meter capacity when needed.
        """
        volume, method, needs_attention = self.estimate_volume(
            pump, calculation_date, station_pump_count, conn=conn
        )
        capacity = pump.meter_capacity
        has_rollover = False

        if closing is not None and opening is None:
            closing_value = closing.meter_value
            opening_value = closing_value - volume
            if opening_value < 0:
                opening_value += capacity
                has_rollover = True
        else:
            if opening is not None:
                opening_value = opening.meter_value
            else:
                opening_value = self._carry_forward_opening(pump, calculation_date, conn)
            closing_value = opening_value + volume
            if closing_value > capacity:
                closing_value -= capacity
                has_rollover = True

        missing = [
            name for name, reading in (("opening", opening), ("closing", closing))
            if reading is None
        ]
        note = f"Estimated ({method.value}); missing {' and '.join(missing)} reading"
        if needs_attention:
            note += "; no usable history, operator review required"
            logger.warning(
                "No estimation history for pump %s on %s, flagged for attention",
                pump.id, calculation_date,
            )

        return Estimate(
            volume=volume,
            opening=quantize_volume(opening_value),
            closing=quantize_volume(closing_value),
            method=method,
            has_rollover=has_rollover,
            needs_attention=needs_attention,
            note=note,
        )

    def _carry_forward_opening(
        self,
        pump: PumpConfiguration,
        calculation_date: date,
        conn: Optional[sqlite3.Connection],
    ) -> Decimal:
        """Previous closing reading, else the last calculation's closing, else 0."""
        previous = self.repository.previous_closing(pump.id, calculation_date, conn=conn)
        if previous is not None:
            return previous.meter_value
        last = self.repository.recent_calculations(
            pump.id, before_date=calculation_date, limit=1, actual_only=False, conn=conn
        )
        if last:
            return last[0].closing_reading
        return ZERO
