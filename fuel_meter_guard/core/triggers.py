"""
Post-commit recalculation hook.

Reading writes commit first and then hand the (pump, date) to this hook.
The hook recalculates a PMS pump once both readings exist. Its failures
are logged and kept in a bounded buffer, never raised back to the writer,
and not retried: the next write or an explicit forced calculation tries
again.
"""

import logging
from collections import deque
from datetime import date
from typing import Deque, List, Optional

from .calculation import CalculationEngine
from .errors import BackgroundCalculationError
from fuel_meter_guard.storage.models import DailyCalculation, ReadingType
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)


class RecalculationHook:
    """Runs a forced single-pump calculation after a reading write commits."""

    def __init__(self, engine: CalculationEngine, repository: MeterRepository, max_failures: int = 100):
        self.engine = engine
        self.repository = repository
        # Oldest failures are dropped once max_failures is reached.
        self.failures: Deque[BackgroundCalculationError] = deque(maxlen=max_failures)

    def drain(self) -> List[BackgroundCalculationError]:
        """Return and forget the failures recorded so far."""
        drained = list(self.failures)
        self.failures.clear()
        return drained

    def pair_complete(self, pump_id: int, reading_date: date) -> bool:
        types = {r.reading_type for r in self.repository.readings_for_day(pump_id, reading_date)}
        return {ReadingType.OPENING, ReadingType.CLOSING} <= types

    def __call__(self, pump_id: int, reading_date: date) -> Optional[DailyCalculation]:
        """Recalculate pump_id for reading_date if both readings now exist.

        Returns:
            The resulting calculation, or None when skipped or failed
        """
        try:
            if not self.pair_complete(pump_id, reading_date):
                return None
            if not self.engine.is_metered(pump_id):
                return None
            return self.engine.calculate_pump(pump_id, reading_date, force_recalculate=True)
        except Exception as e:
            # Isolation boundary: the triggering write has already succeeded.
            error = BackgroundCalculationError(pump_id, reading_date, e)
            self.failures.append(error)
            logger.exception(str(error))
            return None
