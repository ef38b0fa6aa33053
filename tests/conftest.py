"""
Shared fixtures: a service over a temporary database with a fixed clock.
"""
import os
import tempfile
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from fuel_meter_guard.config.loader import MeterGuardConfig, StorageConfig, UserConfig
from fuel_meter_guard.core.clock import FixedClock
from fuel_meter_guard.core.permissions import Actor, Role
from fuel_meter_guard.service import MeterGuardService

LAGOS = ZoneInfo("Africa/Lagos")
STATION = "STN-001"
OTHER_STATION = "STN-002"
PRODUCT = "PMS"
PRICE = Decimal("617.00")

# 2024-01-15 is a Monday
MONDAY = date(2024, 1, 15)

STAFF = Actor(user_id="ada", role=Role.STAFF, station_ids=frozenset({STATION}))
MANAGER = Actor(user_id="musa", role=Role.MANAGER, station_ids=frozenset({STATION}))
DIRECTOR = Actor(user_id="dayo", role=Role.DIRECTOR)
OUTSIDER = Actor(user_id="zee", role=Role.MANAGER, station_ids=frozenset({OTHER_STATION}))


class StubLedger:
    """Transaction ledger backed by a dict keyed by (station, date)."""

    def __init__(self):
        self.quantities = {}

    def pms_quantity(self, station_id, sale_date):
        return self.quantities.get((station_id, sale_date))


def make_config(db_path: str) -> MeterGuardConfig:
    return MeterGuardConfig(
        storage=StorageConfig(db_path=db_path),
        prices={PRODUCT: PRICE},
        users={
            actor.user_id: UserConfig(role=actor.role, stations=actor.station_ids)
            for actor in (STAFF, MANAGER, DIRECTOR, OUTSIDER)
        },
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 12, 0, tzinfo=LAGOS))


@pytest.fixture
def ledger():
    return StubLedger()


@pytest.fixture
def service(clock, ledger):
    """Initialized service over a throwaway database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config = make_config(os.path.join(temp_dir, "test.db"))
        svc = MeterGuardService(config, clock=clock, ledger=ledger)
        svc.initialize()
        yield svc


@pytest.fixture
def pump(service):
    """Active pump with a six digit meter."""
    return service.registry.register(
        STATION, PRODUCT, "Pump 1", Decimal("999999.9"), date(2023, 1, 1), MANAGER
    )


def record_day(service, pump_id, day, opening, closing, actor=STAFF):
    """Record both readings for a day; the closing triggers recalculation."""
    service.readings.record(pump_id, day, "opening", opening, actor)
    service.readings.record(pump_id, day, "closing", closing, actor)
    return service.repository.find_calculation(pump_id, day)
