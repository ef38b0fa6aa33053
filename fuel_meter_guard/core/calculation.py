"""
Daily calculation orchestration.

Turns a pump's opening and closing readings into a persisted daily volume
and revenue, delegating to the rollover resolver, the estimation engine
and the deviation analyzer.

Per-pump rules:
1. An existing actual (non-estimated) row is left alone unless forced
2. Both readings present - volume from the meter, wraparound if closing < opening
3. A reading missing - estimated volume, never auto-approved
4. A recomputation that yields the same figures does not touch the row
"""

import logging
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from .clock import Clock
from .collaborators import ProductCatalog
from .deviation import DeviationAnalyzer
from .errors import MeterGuardError, NotFoundError, ValidationError
from .estimation import EstimationEngine
from .permissions import Actor, require_authenticated, require_station_access
from .rollover import RolloverResolver, resolve_volume
from fuel_meter_guard.storage.db import write_transaction
from fuel_meter_guard.storage.models import (
    CalculationMethod,
    DailyCalculation,
    EstimationMethod,
    PumpConfiguration,
    ReadingType,
    quantize_money,
)
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)

SYSTEM_USER = "system"

# Fields that make up the calculated figures; anything else is audit data.
_FIGURE_FIELDS = (
    "opening_reading", "closing_reading", "volume_dispensed", "unit_price",
    "total_revenue", "has_rollover", "rollover_value", "deviation_from_average",
    "is_estimated", "calculation_method", "estimation_method",
    "needs_attention", "notes",
)
_READING_FIELDS = ("opening_reading", "closing_reading", "volume_dispensed")


@dataclass
class CalculationSummary:
    """Totals of a station-wide calculation run."""
    calculated_count: int = 0
    total_volume: Decimal = Decimal("0.0")
    total_revenue: Decimal = Decimal("0.00")
    calculations: List[DailyCalculation] = field(default_factory=list)

    def add(self, calc: DailyCalculation) -> None:
        self.calculated_count += 1
        self.total_volume += calc.volume_dispensed
        self.total_revenue += calc.total_revenue
        self.calculations.append(calc)


def _same_figures(a: DailyCalculation, b: DailyCalculation) -> bool:
    return all(getattr(a, name) == getattr(b, name) for name in _FIGURE_FIELDS)


def _readings_changed(a: DailyCalculation, b: DailyCalculation) -> bool:
    return any(getattr(a, name) != getattr(b, name) for name in _READING_FIELDS)


class CalculationEngine:
    """Computes and upserts DailyCalculation rows."""

    def __init__(
        self,
        repository: MeterRepository,
        catalog: ProductCatalog,
        estimator: EstimationEngine,
        rollover: RolloverResolver,
        analyzer: DeviationAnalyzer,
        clock: Clock,
        pms_products: Iterable[str] = ("PMS",),
    ):
        self.repository = repository
        self.catalog = catalog
        self.estimator = estimator
        self.rollover = rollover
        self.analyzer = analyzer
        self.clock = clock
        self.pms_products = frozenset(pms_products)

    def pms_pumps(self, station_id: str) -> List[PumpConfiguration]:
        """Active pumps of a station that dispense a PMS product."""
        return [
            pump for pump in self.repository.list_pumps(station_id, active_only=True)
            if pump.product_id in self.pms_products
        ]

    def is_metered(self, pump_id: int) -> bool:
        pump = self.repository.get_pump(pump_id)
        return pump is not None and pump.product_id in self.pms_products

    def calculate(
        self,
        station_id: str,
        calculation_date: date,
        force_recalculate: bool = False,
        actor: Optional[Actor] = None,
    ) -> CalculationSummary:
        """Calculate every active PMS pump of a station for one business day.

        A pump that fails is logged and skipped so that one bad price or
        reading does not block the rest of the station.

        Args:
            station_id: Station to calculate
            calculation_date: Business day
            force_recalculate: Recompute rows that already hold actual figures
            actor: Caller, or None when invoked by the system

        Returns:
            CalculationSummary over the pumps that produced a row

        Raises:
            AuthorizationError: If the actor cannot access the station
            ValidationError: If the station has no active PMS pumps
        """
        calculated_by = SYSTEM_USER
        if actor is not None:
            actor = require_authenticated(actor)
            require_station_access(actor, station_id)
            calculated_by = actor.user_id

        pumps = self.pms_pumps(station_id)
        if not pumps:
            raise ValidationError(f"No active PMS pumps found for station {station_id}")

        summary = CalculationSummary()
        for pump in pumps:
            try:
                calc = self._calculate_pump(
                    pump, calculation_date, force_recalculate, calculated_by, len(pumps)
                )
            except (MeterGuardError, sqlite3.Error):
                logger.exception(
                    "Calculation failed for pump %s on %s", pump.id, calculation_date
                )
                continue
            summary.add(calc)

        logger.info(
            "Calculated station %s for %s: %d pumps, %s L, revenue %s",
            station_id, calculation_date, summary.calculated_count,
            summary.total_volume, summary.total_revenue,
        )
        return summary

    def calculate_pump(
        self,
        pump_id: int,
        calculation_date: date,
        force_recalculate: bool = False,
        actor: Optional[Actor] = None,
    ) -> DailyCalculation:
        """Calculate a single pump for one business day.

        Raises:
            NotFoundError: If the pump does not exist
            ValidationError: If the pump is not active or sells no PMS product
        """
        pump = self.repository.get_pump(pump_id)
        if pump is None:
            raise NotFoundError(f"Pump {pump_id} not found")
        if not pump.is_active:
            raise ValidationError(f"Pump {pump_id} is not active")
        if pump.product_id not in self.pms_products:
            raise ValidationError(f"Pump {pump_id} does not dispense a PMS product")
        calculated_by = SYSTEM_USER
        if actor is not None:
            require_station_access(actor, pump.station_id)
            calculated_by = actor.user_id
        station_pumps = len(self.pms_pumps(pump.station_id))
        return self._calculate_pump(
            pump, calculation_date, force_recalculate, calculated_by, station_pumps
        )

    def list_calculations(
        self,
        station_id: str,
        start_date: date,
        end_date: date,
        actor: Optional[Actor] = None,
    ) -> List[DailyCalculation]:
        """Calculations of a station within an inclusive date range."""
        if actor is not None:
            require_station_access(actor, station_id)
        if start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        return self.repository.list_calculations(station_id, start_date, end_date)

    def _calculate_pump(
        self,
        pump: PumpConfiguration,
        calculation_date: date,
        force_recalculate: bool,
        calculated_by: str,
        station_pump_count: int,
    ) -> DailyCalculation:
        now = self.clock.now()
        with write_transaction(self.repository.db_path) as conn:
            existing = self.repository.find_calculation(pump.id, calculation_date, conn=conn)
            if existing is not None and not existing.is_estimated and not force_recalculate:
                return existing

            readings = {
                r.reading_type: r
                for r in self.repository.readings_for_day(pump.id, calculation_date, conn=conn)
            }
            opening = readings.get(ReadingType.OPENING)
            closing = readings.get(ReadingType.CLOSING)
            unit_price = quantize_money(self.catalog.unit_price(pump.product_id))

            if opening is not None and closing is not None:
                confirmed = None
                if (existing is not None and existing.rollover_value is not None
                        and existing.opening_reading == opening.meter_value):
                    confirmed = existing.rollover_value
                if confirmed is not None:
                    outcome = resolve_volume(
                        opening.meter_value, closing.meter_value, pump.meter_capacity, confirmed
                    )
                else:
                    outcome = self.rollover.provisional(
                        opening.meter_value, closing.meter_value, pump.meter_capacity
                    )
                if outcome.has_rollover and outcome.rollover_value is None:
                    logger.warning(
                        "Meter rollover detected for pump %s on %s (opening %s, closing %s)",
                        pump.id, calculation_date, opening.meter_value, closing.meter_value,
                    )

                is_estimated = opening.is_estimated or closing.is_estimated
                estimation_method = None
                if is_estimated:
                    estimation_method = (
                        opening.estimation_method or closing.estimation_method
                        or EstimationMethod.MANUAL
                    )
                opening_value = opening.meter_value
                closing_value = closing.meter_value
                volume = outcome.volume
                has_rollover = outcome.has_rollover
                rollover_value = outcome.rollover_value
                needs_attention = False
                notes = existing.notes if confirmed is not None else None
            else:
                estimate = self.estimator.estimate(
                    pump, calculation_date, opening, closing, station_pump_count, conn=conn
                )
                is_estimated = True
                estimation_method = estimate.method
                opening_value = estimate.opening
                closing_value = estimate.closing
                volume = estimate.volume
                has_rollover = estimate.has_rollover
                rollover_value = None
                needs_attention = estimate.needs_attention
                notes = estimate.note

            candidate = DailyCalculation(
                id=None,
                pump_id=pump.id,
                calculation_date=calculation_date,
                opening_reading=opening_value,
                closing_reading=closing_value,
                volume_dispensed=volume,
                unit_price=unit_price,
                total_revenue=quantize_money(volume * unit_price),
                has_rollover=has_rollover,
                rollover_value=rollover_value,
                deviation_from_average=self.analyzer.deviation(
                    pump.id, volume, calculation_date, conn=conn
                ),
                is_estimated=is_estimated,
                calculation_method=(
                    CalculationMethod.ESTIMATED if is_estimated else CalculationMethod.METER_ACTUAL
                ),
                estimation_method=estimation_method,
                needs_attention=needs_attention,
                notes=notes,
                calculated_by=calculated_by,
                calculated_at=now,
            )

            if existing is not None:
                if _same_figures(existing, candidate):
                    return existing
                if is_estimated and existing.is_estimated and not _readings_changed(existing, candidate):
                    candidate = replace(
                        candidate,
                        approved_by=existing.approved_by,
                        approved_at=existing.approved_at,
                        approval_decision=existing.approval_decision,
                        approval_notes=existing.approval_notes,
                    )
                elif existing.approved_by is not None:
                    logger.info(
                        "Figures for pump %s on %s changed, clearing approval by %s",
                        pump.id, calculation_date, existing.approved_by,
                    )

            return self.repository.upsert_calculation(candidate, conn=conn)
