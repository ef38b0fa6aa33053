"""
Pump registry.

Holds pump capacity, status and product assignment for each station.
"""

import logging
import sqlite3
from dataclasses import replace
from datetime import date
from typing import List, Optional

from .errors import ConflictError, NotFoundError, ValidationError, require_decimal
from .permissions import Actor, require_manager, require_station_access
from fuel_meter_guard.storage.models import PumpConfiguration, PumpStatus, quantize_volume
from fuel_meter_guard.storage.repository import MeterRepository

logger = logging.getLogger(__name__)


class PumpRegistry:
    """Manager-maintained pump configurations."""

    def __init__(self, repository: MeterRepository):
        self.repository = repository

    def register(
        self,
        station_id: str,
        product_id: str,
        label: str,
        meter_capacity,
        install_date: date,
        actor: Optional[Actor],
    ) -> PumpConfiguration:
        """Add a new active pump to a station.

        Args:
            station_id: Station the pump belongs to
            product_id: Fuel product dispensed by the pump
            label: Pump label, unique within the station
            meter_capacity: Value at which the meter counter wraps
            install_date: Installation date
            actor: Caller; must be a manager

        Returns:
            The stored pump configuration

        Raises:
            AuthorizationError: If the caller is not a manager of the station
            ValidationError: If label or capacity is invalid
            ConflictError: If the label is already used at the station
        """
        actor = require_manager(actor, "configure pumps")
        require_station_access(actor, station_id)
        if not label or not label.strip():
            raise ValidationError("label is required and cannot be empty")
        if not product_id:
            raise ValidationError("product_id is required")
        capacity = quantize_volume(require_decimal(meter_capacity, "meter_capacity"))
        if capacity <= 0:
            raise ValidationError("meter_capacity must be > 0")

        try:
            pump = self.repository.insert_pump(
                station_id=station_id,
                product_id=product_id,
                label=label.strip(),
                meter_capacity=capacity,
                install_date=install_date,
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"Pump label '{label}' already exists for station {station_id}")

        logger.info("Registered pump %s (%s) at station %s", pump.id, pump.label, station_id)
        return pump

    def get(self, pump_id: int) -> PumpConfiguration:
        """Get a pump by id.

        Raises:
            NotFoundError: If no such pump exists
        """
        pump = self.repository.get_pump(pump_id)
        if pump is None:
            raise NotFoundError(f"Pump {pump_id} not found")
        return pump

    def list_pumps(self, station_id: str, active_only: bool = False) -> List[PumpConfiguration]:
        return self.repository.list_pumps(station_id, active_only=active_only)

    def update(
        self,
        pump_id: int,
        actor: Optional[Actor],
        label: Optional[str] = None,
        meter_capacity=None,
        last_calibration_date: Optional[date] = None,
    ) -> PumpConfiguration:
        """Change label, capacity or calibration date of a pump.

        Changing the capacity of a pump with history alters how past
        rollovers would be recomputed; callers are expected to avoid it.
        """
        pump = self.get(pump_id)
        actor = require_manager(actor, "configure pumps")
        require_station_access(actor, pump.station_id)

        changes = {}
        if label is not None:
            if not label.strip():
                raise ValidationError("label cannot be empty")
            changes["label"] = label.strip()
        if meter_capacity is not None:
            capacity = quantize_volume(require_decimal(meter_capacity, "meter_capacity"))
            if capacity <= 0:
                raise ValidationError("meter_capacity must be > 0")
            changes["meter_capacity"] = capacity
        if last_calibration_date is not None:
            changes["last_calibration_date"] = last_calibration_date
        if not changes:
            return pump

        try:
            return self.repository.save_pump(replace(pump, **changes))
        except sqlite3.IntegrityError:
            raise ConflictError(f"Pump label '{label}' already exists for station {pump.station_id}")

    def set_status(self, pump_id: int, status: PumpStatus, actor: Optional[Actor]) -> PumpConfiguration:
        """Move a pump between active, maintenance and retired."""
        pump = self.get(pump_id)
        actor = require_manager(actor, "change pump status")
        require_station_access(actor, pump.station_id)
        updated = self.repository.save_pump(
            replace(pump, status=status, is_active=status == PumpStatus.ACTIVE)
        )
        logger.info("Pump %s status changed %s -> %s", pump_id, pump.status.value, status.value)
        return updated

    def retire(self, pump_id: int, actor: Optional[Actor]) -> PumpConfiguration:
        """Soft delete: the pump and its history stay, it just stops counting."""
        return self.set_status(pump_id, PumpStatus.RETIRED, actor)
