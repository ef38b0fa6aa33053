"""
Tests for the pump registry.
"""
from datetime import date
from decimal import Decimal

import pytest

from fuel_meter_guard.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from fuel_meter_guard.storage.models import PumpStatus

from conftest import DIRECTOR, MANAGER, OUTSIDER, PRODUCT, STAFF, STATION


class TestPumpRegistration:
    """Test registering pumps."""

    def test_manager_registers_pump(self, service):
        pump = service.registry.register(
            STATION, PRODUCT, " Pump 1 ", 999999.9, date(2023, 1, 1), MANAGER
        )

        assert pump.label == "Pump 1"
        assert pump.meter_capacity == Decimal("999999.9")
        assert pump.status == PumpStatus.ACTIVE
        assert service.registry.get(pump.id) == pump

    @pytest.mark.parametrize("actor", [STAFF, DIRECTOR, None])
    def test_only_managers_register(self, service, actor):
        with pytest.raises(AuthorizationError):
            service.registry.register(STATION, PRODUCT, "Pump 1", 999999.9, date(2023, 1, 1), actor)

    def test_manager_of_other_station_refused(self, service):
        with pytest.raises(AuthorizationError):
            service.registry.register(STATION, PRODUCT, "Pump 1", 999999.9, date(2023, 1, 1), OUTSIDER)

    def test_duplicate_label_conflicts(self, service, pump):
        with pytest.raises(ConflictError, match="already exists"):
            service.registry.register(STATION, PRODUCT, "Pump 1", 99999.9, date(2023, 1, 1), MANAGER)

    @pytest.mark.parametrize("capacity", [0, -5, "abc"])
    def test_invalid_capacity(self, service, capacity):
        with pytest.raises(ValidationError):
            service.registry.register(STATION, PRODUCT, "Pump 9", capacity, date(2023, 1, 1), MANAGER)

    def test_empty_label(self, service):
        with pytest.raises(ValidationError, match="label"):
            service.registry.register(STATION, PRODUCT, "  ", 999999.9, date(2023, 1, 1), MANAGER)


class TestPumpMaintenance:
    """Test updating and retiring pumps."""

    def test_get_missing_pump(self, service):
        with pytest.raises(NotFoundError):
            service.registry.get(404)

    def test_update_calibration_and_label(self, service, pump):
        updated = service.registry.update(
            pump.id, MANAGER, label="Pump 1A", last_calibration_date=date(2024, 1, 2)
        )

        assert updated.label == "Pump 1A"
        assert updated.last_calibration_date == date(2024, 1, 2)
        assert updated.meter_capacity == pump.meter_capacity

    def test_update_without_changes_returns_pump(self, service, pump):
        assert service.registry.update(pump.id, MANAGER) == pump

    def test_maintenance_excluded_from_active_list(self, service, pump):
        service.registry.set_status(pump.id, PumpStatus.MAINTENANCE, MANAGER)

        assert service.registry.list_pumps(STATION, active_only=True) == []
        assert len(service.registry.list_pumps(STATION)) == 1

    def test_retire_keeps_history(self, service, pump):
        retired = service.registry.retire(pump.id, MANAGER)

        assert retired.status == PumpStatus.RETIRED
        assert not retired.is_active
        assert service.registry.get(pump.id).status == PumpStatus.RETIRED

    def test_staff_cannot_change_status(self, service, pump):
        with pytest.raises(AuthorizationError):
            service.registry.set_status(pump.id, PumpStatus.MAINTENANCE, STAFF)
