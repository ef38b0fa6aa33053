"""
Deviation analysis against trailing history.

Scores a day's dispensed volume against the pump's recent actual
(non-estimated) volumes and grades the difference into severity bands.
"""

import sqlite3
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .clock import Clock
from .errors import ValidationError, require_decimal
from fuel_meter_guard.config.loader import DeviationConfig
from fuel_meter_guard.storage.models import DailyCalculation, quantize_percent
from fuel_meter_guard.storage.repository import MeterRepository


class DeviationSeverity(Enum):
    """Severity bands for a deviation, in increasing order."""
    NORMAL = 0
    MODERATE = 1
    HIGH = 2
    CRITICAL = 3


@dataclass(frozen=True)
class DeviationFinding:
    """A calculation whose volume strays from the pump's trailing average."""
    calculation: DailyCalculation
    pump_label: str
    average_volume: Optional[Decimal]
    deviation_percent: Decimal
    severity: DeviationSeverity


def mean_volume(calculations: List[DailyCalculation]) -> Optional[Decimal]:
    """Mean volume_dispensed of the given calculations, None if empty."""
    if not calculations:
        return None
    total = sum((c.volume_dispensed for c in calculations), Decimal("0"))
    return total / Decimal(len(calculations))


def deviation_percent(volume: Decimal, average: Optional[Decimal]) -> Decimal:
    """Percentage difference of volume from average; 0 without an average."""
    if average is None or average == 0:
        return Decimal("0.00")
    return quantize_percent((volume - average) / average * Decimal(100))


class DeviationAnalyzer:
    """Trailing-average deviation scoring for daily calculations."""

    def __init__(self, repository: MeterRepository, config: DeviationConfig, clock: Clock):
        self.repository = repository
        self.config = config
        self.clock = clock

    def average(
        self,
        pump_id: int,
        lookback_days: Optional[int] = None,
        before_date: Optional[date] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Decimal]:
        """Mean volume of actual calculations in the lookback window.

        The window is [before_date - lookback_days, before_date), so the day
        being scored never contributes to its own baseline.

        Args:
            pump_id: Pump to average
            lookback_days: Window length, defaults to configuration
            before_date: Exclusive end of the window, defaults to today
            conn: Optional connection to read through

        Returns:
            Mean volume, or None if no actual calculations exist in the window
        """
        lookback = lookback_days or self.config.lookback_days
        end = before_date or self.clock.now().date()
        history = self.repository.recent_calculations(
            pump_id,
            before_date=end,
            since_date=end - timedelta(days=lookback),
            actual_only=True,
            conn=conn,
        )
        return mean_volume(history)

    def deviation(
        self,
        pump_id: int,
        volume: Decimal,
        calculation_date: date,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Decimal:
        """Deviation percent of volume from the trailing average before calculation_date."""
        average = self.average(pump_id, before_date=calculation_date, conn=conn)
        return deviation_percent(volume, average)

    def severity(self, deviation: Decimal) -> DeviationSeverity:
        """Grade an absolute deviation into the configured bands."""
        magnitude = abs(float(deviation))
        if magnitude >= self.config.critical:
            return DeviationSeverity.CRITICAL
        if magnitude >= self.config.high:
            return DeviationSeverity.HIGH
        if magnitude >= self.config.moderate:
            return DeviationSeverity.MODERATE
        return DeviationSeverity.NORMAL

    def find_deviations(
        self,
        station_id: str,
        threshold_percent=None,
        lookback_days: Optional[int] = None,
    ) -> List[DeviationFinding]:
        """List recent calculations whose |deviation| reaches the threshold.

        Approval state is ignored: decided estimates still show up.

        Args:
            station_id: Station to scan
            threshold_percent: Minimum absolute deviation, defaults to the moderate band
            lookback_days: How many days back from today to scan

        Returns:
            Findings sorted by severity, then magnitude, most severe first

        Raises:
            ValidationError: If threshold or lookback is not positive
        """
        if threshold_percent is None:
            threshold = Decimal(str(self.config.moderate))
        else:
            threshold = require_decimal(threshold_percent, "threshold_percent")
        if threshold <= 0:
            raise ValidationError("threshold_percent must be a positive number")
        lookback = self.config.lookback_days if lookback_days is None else lookback_days
        if lookback <= 0:
            raise ValidationError("lookback_days must be a positive integer")

        today = self.clock.now().date()
        labels = {p.id: p.label for p in self.repository.list_pumps(station_id)}
        calculations = self.repository.list_calculations(
            station_id, today - timedelta(days=lookback), today
        )

        findings = []
        for calc in calculations:
            if abs(calc.deviation_from_average) < threshold:
                continue
            findings.append(DeviationFinding(
                calculation=calc,
                pump_label=labels.get(calc.pump_id, str(calc.pump_id)),
                average_volume=self.average(calc.pump_id, lookback, calc.calculation_date),
                deviation_percent=calc.deviation_from_average,
                severity=self.severity(calc.deviation_from_average),
            ))

        findings.sort(
            key=lambda f: (f.severity.value, abs(f.deviation_percent)),
            reverse=True,
        )
        return findings
