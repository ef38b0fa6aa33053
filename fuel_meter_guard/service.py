"""
Operation surface over the meter engine.

Wires the components together from configuration and exposes each
operation as a call that returns an explicit OperationResult instead of
raising. This is the layer a web transport or the CLI sits on.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable, Mapping, Optional

from fuel_meter_guard.config.loader import MeterGuardConfig, default_config
from fuel_meter_guard.core.approval import ApprovalWorkflow
from fuel_meter_guard.core.calculation import CalculationEngine
from fuel_meter_guard.core.clock import Clock, SystemClock
from fuel_meter_guard.core.collaborators import (
    AuthGateway,
    ProductCatalog,
    SqliteTransactionLedger,
    StaticAuthGateway,
    StaticProductCatalog,
    TransactionLedger,
)
from fuel_meter_guard.core.deviation import DeviationAnalyzer
from fuel_meter_guard.core.errors import MeterGuardError
from fuel_meter_guard.core.estimation import EstimationEngine
from fuel_meter_guard.core.modification_window import ManagerOverride, ModificationWindowGuard
from fuel_meter_guard.core.permissions import require_station_access
from fuel_meter_guard.core.readings import ReadingStore
from fuel_meter_guard.core.registry import PumpRegistry
from fuel_meter_guard.core.rollover import RolloverResolver
from fuel_meter_guard.core.triggers import RecalculationHook
from fuel_meter_guard.storage.models import EstimationMethod
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    """Explicit success or failure of one operation."""
    is_success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


def run_operation(operation: Callable[[], Any]) -> OperationResult:
    """Run operation, converting engine and storage errors to a failed result."""
    try:
        return OperationResult(is_success=True, data=operation())
    except MeterGuardError as e:
        return OperationResult(is_success=False, error=str(e), error_kind=e.kind)
    except sqlite3.Error as e:
        logger.exception("Storage error")
        return OperationResult(is_success=False, error=f"Storage error: {e}", error_kind="storage")


def _gateway_from_config(config: MeterGuardConfig) -> StaticAuthGateway:
    return StaticAuthGateway(
        users={user_id: (user.role, user.stations) for user_id, user in config.users.items()}
    )


class MeterGuardService:
    """All meter operations for one database, resolved per calling user."""

    def __init__(
        self,
        config: Optional[MeterGuardConfig] = None,
        clock: Optional[Clock] = None,
        catalog: Optional[ProductCatalog] = None,
        ledger: Optional[TransactionLedger] = None,
        auth: Optional[AuthGateway] = None,
    ):
        self.config = config or default_config()
        db_path = self.config.storage.db_path
        self.repository = MeterRepository(db_path)
        self.clock = clock or SystemClock(self.config.station.tzinfo)
        self.catalog = catalog or StaticProductCatalog(self.config.prices)
        self.ledger = ledger or SqliteTransactionLedger(db_path)
        self.auth = auth or _gateway_from_config(self.config)

        self.registry = PumpRegistry(self.repository)
        self.analyzer = DeviationAnalyzer(self.repository, self.config.deviation, self.clock)
        self.rollover = RolloverResolver(self.repository, self.analyzer, self.clock)
        self.estimator = EstimationEngine(self.repository, self.ledger, self.config.estimation)
        self.engine = CalculationEngine(
            self.repository, self.catalog, self.estimator, self.rollover, self.analyzer, self.clock,
            pms_products=self.config.station.pms_products,
        )
        self.recalculation = RecalculationHook(self.engine, self.repository)
        self.readings = ReadingStore(self.repository, self.clock, after_commit=self.recalculation)
        self.window = ModificationWindowGuard(
            self.repository,
            self.clock,
            self.config.station.tzinfo,
            self.config.modification_window.cutoff_hour,
            after_commit=self.recalculation,
        )
        self.approvals = ApprovalWorkflow(self.repository, self.clock)

    def initialize(self) -> None:
        self.repository.initialize()

    def _reader(self, user_id: Optional[str], station_id: str):
        actor = self.auth.resolve(user_id)
        require_station_access(actor, station_id)
        return actor

    # Pumps

    def register_pump(self, user_id, station_id, product_id, label, meter_capacity, install_date) -> OperationResult:
        return run_operation(lambda: self.registry.register(
            station_id, product_id, label, meter_capacity, install_date, self.auth.resolve(user_id)
        ))

    def list_pumps(self, user_id, station_id, active_only: bool = False) -> OperationResult:
        def op():
            self._reader(user_id, station_id)
            return self.registry.list_pumps(station_id, active_only=active_only)
        return run_operation(op)

    # Readings

    def record_reading(
        self,
        user_id,
        pump_id: int,
        reading_date: date,
        reading_type,
        meter_value,
        notes: Optional[str] = None,
        is_estimated: bool = False,
        estimation_method: Optional[EstimationMethod] = None,
    ) -> OperationResult:
        return run_operation(lambda: self.readings.record(
            pump_id, reading_date, reading_type, meter_value, self.auth.resolve(user_id),
            notes=notes, is_estimated=is_estimated, estimation_method=estimation_method,
        ))

    def record_bulk(
        self,
        user_id,
        station_id: str,
        reading_date: date,
        reading_type,
        entries: Iterable[Mapping],
    ) -> OperationResult:
        return run_operation(lambda: self.readings.record_bulk(
            station_id, reading_date, reading_type, entries, self.auth.resolve(user_id)
        ))

    def update_reading(
        self,
        user_id,
        reading_id: int,
        meter_value,
        notes: Optional[str] = None,
        override_manager_id: Optional[str] = None,
        override_reason: Optional[str] = None,
    ) -> OperationResult:
        def op():
            actor = self.auth.resolve(user_id)
            override = None
            if override_manager_id is not None:
                override = ManagerOverride(
                    manager=self.auth.resolve(override_manager_id),
                    reason=override_reason or "",
                )
            return self.window.update(reading_id, meter_value, actor, override=override, notes=notes)
        return run_operation(op)

    def list_readings(self, user_id, station_id, start_date, end_date, pump_id=None) -> OperationResult:
        return run_operation(lambda: self.readings.get(
            station_id, start_date, end_date, pump_id, actor=self.auth.resolve(user_id)
        ))

    def daily_status(self, user_id, station_id: str, reading_date: date) -> OperationResult:
        def op():
            self._reader(user_id, station_id)
            return self.readings.daily_status(station_id, reading_date)
        return run_operation(op)

    # Calculations

    def calculate(self, user_id, station_id: str, calculation_date: date, force_recalculate: bool = False) -> OperationResult:
        return run_operation(lambda: self.engine.calculate(
            station_id, calculation_date, force_recalculate, actor=self.auth.resolve(user_id)
        ))

    def list_calculations(self, user_id, station_id: str, start_date: date, end_date: date) -> OperationResult:
        return run_operation(lambda: self.engine.list_calculations(
            station_id, start_date, end_date, actor=self.auth.resolve(user_id)
        ))

    def list_deviations(self, user_id, station_id: str, threshold_percent=None, lookback_days=None) -> OperationResult:
        def op():
            self._reader(user_id, station_id)
            return self.analyzer.find_deviations(station_id, threshold_percent, lookback_days)
        return run_operation(op)

    def confirm_rollover(self, user_id, calculation_id: int, rollover_value, new_closing_reading, notes=None) -> OperationResult:
        return run_operation(lambda: self.rollover.confirm_rollover(
            calculation_id, rollover_value, new_closing_reading, notes, self.auth.resolve(user_id)
        ))

    # Approvals

    def decide(self, user_id, calculation_id: int, approved: Optional[bool], notes: Optional[str] = None) -> OperationResult:
        return run_operation(lambda: self.approvals.decide(
            calculation_id, approved, self.auth.resolve(user_id), notes
        ))

    def pending_approvals(self, user_id, station_id: str) -> OperationResult:
        def op():
            self._reader(user_id, station_id)
            return self.approvals.pending(station_id)
        return run_operation(op)
