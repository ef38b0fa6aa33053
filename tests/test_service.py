"""
Tests for the operation surface and its explicit results.
"""
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import patch

from fuel_meter_guard.core.errors import ConflictError
from fuel_meter_guard.service import OperationResult, run_operation

from conftest import LAGOS, MONDAY, PRODUCT, STATION


class TestRunOperation:
    """Test conversion of errors into failed results."""

    def test_success(self):
        result = run_operation(lambda: 42)
        assert result == OperationResult(is_success=True, data=42)

    def test_engine_error_kind(self):
        def op():
            raise ConflictError("duplicate")

        result = run_operation(op)
        assert not result.is_success
        assert result.error == "duplicate"
        assert result.error_kind == "conflict"

    def test_storage_error(self):
        def op():
            raise sqlite3.OperationalError("database is locked")

        result = run_operation(op)
        assert not result.is_success
        assert result.error_kind == "storage"
        assert "database is locked" in result.error


class TestServiceOperations:
    """Test operations resolved through the auth gateway."""

    def _pump(self, service):
        result = service.register_pump("musa", STATION, PRODUCT, "Pump 1", 999999.9, date(2023, 1, 1))
        assert result.is_success
        return result.data

    def test_unknown_user(self, service):
        result = service.register_pump("nobody", STATION, PRODUCT, "Pump 1", 999999.9, date(2023, 1, 1))
        assert result.error_kind == "authorization"
        assert "Unknown user" in result.error

    def test_missing_user(self, service):
        result = service.record_reading(None, 1, MONDAY, "opening", 1.0)
        assert result.error_kind == "authorization"
        assert result.error == "Authentication required"

    def test_record_and_calculate(self, service):
        pump = self._pump(service)
        assert service.record_reading("ada", pump.id, MONDAY, "opening", 14000.0).is_success
        assert service.record_reading("ada", pump.id, MONDAY, "closing", 14500.0).is_success

        result = service.list_calculations("dayo", STATION, MONDAY, MONDAY)
        assert result.is_success
        assert result.data[0].volume_dispensed == Decimal("500.0")

    def test_duplicate_reading_result(self, service):
        pump = self._pump(service)
        service.record_reading("ada", pump.id, MONDAY, "opening", 14000.0)

        result = service.record_reading("ada", pump.id, MONDAY, "opening", 14000.0)
        assert result.error_kind == "conflict"
        assert result.error == "Reading already exists for this pump, date, and type"

    def test_capacity_result(self, service):
        pump = self._pump(service)
        result = service.record_reading("ada", pump.id, MONDAY, "opening", 1000000.0)
        assert result.error_kind == "capacity"

    def test_director_read_only(self, service):
        pump = self._pump(service)
        result = service.record_reading("dayo", pump.id, MONDAY, "opening", 1.0)
        assert result.error_kind == "authorization"

        assert service.daily_status("dayo", STATION, MONDAY).is_success

    def test_update_with_override_by_user_id(self, service, clock):
        pump = self._pump(service)
        reading = service.record_reading("ada", pump.id, MONDAY, "opening", 14000.0).data
        clock.set(datetime(2024, 1, 17, 9, 0, tzinfo=LAGOS))

        expired = service.update_reading("ada", reading.id, 14001.0)
        assert expired.error_kind == "window_expired"
        assert "Modification window expired" in expired.error

        overridden = service.update_reading(
            "ada", reading.id, 14001.0, override_manager_id="musa", override_reason="typo"
        )
        assert overridden.is_success
        assert overridden.data.modified_by == "musa"

    def test_override_by_staff_refused(self, service, clock):
        pump = self._pump(service)
        reading = service.record_reading("ada", pump.id, MONDAY, "opening", 14000.0).data
        clock.set(datetime(2024, 1, 17, 9, 0, tzinfo=LAGOS))

        result = service.update_reading(
            "ada", reading.id, 14001.0, override_manager_id="ada", override_reason="typo"
        )
        assert result.error_kind == "authorization"

    def test_approval_flow(self, service):
        pump = self._pump(service)
        service.record_reading("ada", pump.id, MONDAY, "opening", 14000.0)
        service.calculate("musa", STATION, MONDAY)

        pending = service.pending_approvals("musa", STATION)
        assert len(pending.data) == 1

        denied = service.decide("ada", pending.data[0].id, True)
        assert denied.error_kind == "authorization"

        approved = service.decide("musa", pending.data[0].id, True, "fine")
        assert approved.is_success
        assert service.pending_approvals("musa", STATION).data == []

    def test_station_scope_enforced(self, service):
        self._pump(service)
        result = service.list_pumps("zee", STATION)
        assert result.error_kind == "authorization"

    def test_bulk_record(self, service):
        pump = self._pump(service)
        result = service.record_bulk(
            "ada", STATION, MONDAY, "opening", [{"pump_id": pump.id, "meter_value": 10.0}]
        )
        assert result.is_success
        assert result.data.recorded_count == 1

    def test_confirm_rollover(self, service):
        pump = self._pump(service)
        service.record_reading("ada", pump.id, MONDAY, "opening", 14000.0)
        service.record_reading("ada", pump.id, MONDAY, "closing", 100.5)
        calc = service.list_calculations("ada", STATION, MONDAY, MONDAY).data[0]

        result = service.confirm_rollover("ada", calc.id, 999999.9, 100.5)
        assert result.is_success
        assert result.data.volume_dispensed == Decimal("986100.4")

    def test_list_deviations_validation(self, service):
        self._pump(service)
        result = service.list_deviations("musa", STATION, threshold_percent=0)
        assert result.error_kind == "validation"

    def test_storage_error_reported(self, service):
        with patch.object(service.registry, "list_pumps", side_effect=sqlite3.DatabaseError("disk image is malformed")):
            result = service.list_pumps("musa", STATION)
        assert result.error_kind == "storage"

    def test_oversized_value_is_validation_failure(self, service):
        pump = self._pump(service)
        result = service.record_reading("ada", pump.id, MONDAY, "opening", "1e30")
        assert result.error_kind == "validation"
        assert "must be below" in result.error
