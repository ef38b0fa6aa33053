"""
Meter rollover detection and correction.

A closing value below the opening value means the counter wrapped during
the day. Until someone confirms the value it wrapped at, the volume is
computed provisionally against the pump's meter capacity.

Only one wrap per pump per day can be represented.
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional

from .clock import Clock
from .deviation import DeviationAnalyzer
from .errors import CapacityError, NotFoundError, StateError, ValidationError, require_decimal
from .permissions import Actor, require_reading_writer
from fuel_meter_guard.storage.db import write_transaction
from fuel_meter_guard.storage.models import (
    CalculationMethod,
    DailyCalculation,
    quantize_money,
    quantize_volume,
)
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolloverOutcome:
    """Volume between two meter values, accounting for at most one wrap."""
    volume: Decimal
    has_rollover: bool
    rollover_value: Optional[Decimal] = None


def resolve_volume(
    opening: Decimal,
    closing: Decimal,
    meter_capacity: Decimal,
    confirmed_rollover: Optional[Decimal] = None,
) -> RolloverOutcome:
    """Compute dispensed volume from an opening and closing meter value.

    Args:
        opening: Opening meter value
        closing: Closing meter value
        meter_capacity: Value at which the pump's counter wraps
        confirmed_rollover: Wrap point confirmed by an operator, if any

    Returns:
        RolloverOutcome; rollover_value stays None until confirmed
    """
    if closing >= opening:
        return RolloverOutcome(volume=quantize_volume(closing - opening), has_rollover=False)

    wrap_point = confirmed_rollover if confirmed_rollover is not None else meter_capacity
    volume = quantize_volume((wrap_point - opening) + closing)
    return RolloverOutcome(
        volume=max(volume, Decimal("0.0")),
        has_rollover=True,
        rollover_value=confirmed_rollover,
    )


class RolloverResolver:
    """Provisional wraparound volumes and one-shot operator confirmation."""

    def __init__(self, repository: MeterRepository, analyzer: DeviationAnalyzer, clock: Clock):
        self.repository = repository
        self.analyzer = analyzer
        self.clock = clock

    def provisional(self, opening: Decimal, closing: Decimal, meter_capacity: Decimal) -> RolloverOutcome:
        return resolve_volume(opening, closing, meter_capacity)

    def confirm_rollover(
        self,
        calculation_id: int,
        rollover_value,
        new_closing_reading,
        notes: Optional[str],
        actor: Optional[Actor],
    ) -> DailyCalculation:
        """Correct a provisional rollover with the value the meter wrapped at.

        Args:
            calculation_id: Calculation flagged with a rollover
            rollover_value: Meter value at which the counter wrapped
            new_closing_reading: Closing value after the wrap
            notes: Operator notes stored on the calculation
            actor: Caller; directors are refused

        Returns:
            The corrected calculation

        Raises:
            NotFoundError: If the calculation or its pump does not exist
            StateError: If no rollover was detected, it is already confirmed, or
                it was estimated from a missing reading
            ValidationError: If the values are out of range
            CapacityError: If the new closing reading exceeds capacity
        """
        rollover = require_decimal(rollover_value, "rollover_value")
        new_closing = require_decimal(new_closing_reading, "new_closing_reading")
        now = self.clock.now()

        with write_transaction(self.repository.db_path) as conn:
            calc = self.repository.get_calculation(calculation_id, conn=conn)
            if calc is None:
                raise NotFoundError(f"Calculation {calculation_id} not found")
            pump = self.repository.get_pump(calc.pump_id, conn=conn)
            if pump is None:
                raise NotFoundError(f"Pump {calc.pump_id} not found")
            actor = require_reading_writer(actor, pump.station_id)

            if not calc.has_rollover:
                raise StateError("No rollover was detected for this calculation")
            if calc.rollover_value is not None:
                raise StateError(
                    f"Rollover already confirmed at {calc.rollover_value} for this calculation"
                )
            # An estimated wrap is re-synthesized on every recalculation.
            recorded = self.repository.readings_for_day(pump.id, calc.calculation_date, conn=conn)
            if len(recorded) < 2:
                raise StateError(
                    "Rollover on this calculation was estimated from a missing reading; "
                    "record the missing reading instead of confirming it"
                )

            capacity = pump.meter_capacity
            if not calc.opening_reading < rollover <= capacity:
                raise ValidationError(
                    f"rollover_value must be greater than the opening reading "
                    f"{calc.opening_reading} and at most the meter capacity {capacity}"
                )
            if new_closing > capacity:
                raise CapacityError(new_closing, capacity)

            volume = quantize_volume((rollover - calc.opening_reading) + new_closing)
            confirmation = f"[ROLLOVER CONFIRMED at {rollover} by {actor.user_id}]"
            combined_notes = "\n".join(n for n in (calc.notes, notes, confirmation) if n)

            corrected = replace(
                calc,
                closing_reading=quantize_volume(new_closing),
                volume_dispensed=volume,
                total_revenue=quantize_money(volume * calc.unit_price),
                rollover_value=quantize_volume(rollover),
                deviation_from_average=self.analyzer.deviation(
                    calc.pump_id, volume, calc.calculation_date, conn=conn
                ),
                calculation_method=(
                    calc.calculation_method if calc.is_estimated else CalculationMethod.METER_ACTUAL
                ),
                notes=combined_notes,
                calculated_by=actor.user_id,
                calculated_at=now,
            )
            stored = self.repository.upsert_calculation(corrected, conn=conn)

        logger.info(
            "Confirmed rollover for pump %s on %s: wrap at %s, volume %s",
            calc.pump_id, calc.calculation_date, rollover, volume,
        )
        return stored
