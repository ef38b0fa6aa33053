# fuel_meter_guard/demo/seed_demo_data.py

from datetime import timedelta
from decimal import Decimal

from fuel_meter_guard.core.permissions import Actor, Role
from fuel_meter_guard.storage.db import get_connection
from fuel_meter_guard.storage.models import ReadingType

DEMO_STATION = "STN-001"
DEMO_PRODUCT = "PMS"
DEMO_MANAGER = Actor(user_id="demo-manager", role=Role.MANAGER)

# label, capacity, first opening, litres dispensed per day
DEMO_PUMPS = [
    ("Pump 1", Decimal("999999.9"), Decimal("14000.0"),
     ["1210.5", "1185.0", "1250.2", "1198.7", "2960.0", "1220.4", "1204.1"]),
    ("Pump 2", Decimal("99999.9"), Decimal("96500.0"),
     ["610.0", "585.5", "640.2", "598.3", "622.9", "605.0", "615.4"]),
]
# (pump label, days before today) whose closing reading is left out
MISSING_CLOSINGS = {("Pump 2", 4)}


def _record_sale(db_path: str, station_id: str, sale_date, quantity: Decimal) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pms_sales_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                station_id TEXT NOT NULL,
                sale_date TEXT NOT NULL,
                quantity TEXT NOT NULL
            )
        """)
        conn.execute(
            "INSERT INTO pms_sales_transactions (station_id, sale_date, quantity) VALUES (?, ?, ?)",
            (station_id, sale_date.isoformat(), str(quantity)),
        )
        conn.commit()
    finally:
        conn.close()


def seed_demo_data(service) -> str:
    """Register demo pumps and record a week of readings ending yesterday.

    Pump 2 wraps past its capacity during the week and is missing one
    closing reading, so the demo shows a rollover and an estimate. Pump 1
    has one spike day for the deviation report.
    """
    today = service.clock.now().date()
    existing = {p.label: p for p in service.registry.list_pumps(DEMO_STATION)}
    recorded = 0

    for label, capacity, opening, volumes in DEMO_PUMPS:
        pump = existing.get(label) or service.registry.register(
            DEMO_STATION, DEMO_PRODUCT, label, capacity,
            today - timedelta(days=365), DEMO_MANAGER,
        )
        meter = opening
        for offset, volume in zip(range(len(volumes), 0, -1), volumes):
            day = today - timedelta(days=offset)
            closing = meter + Decimal(volume)
            if closing > capacity:
                closing -= capacity
            if service.repository.readings_for_day(pump.id, day):
                meter = closing
                continue
            service.readings.record(pump.id, day, ReadingType.OPENING, meter, DEMO_MANAGER)
            recorded += 1
            if (label, offset) in MISSING_CLOSINGS:
                _record_sale(service.config.storage.db_path, DEMO_STATION, day, Decimal("1200.0"))
            else:
                service.readings.record(pump.id, day, ReadingType.CLOSING, closing, DEMO_MANAGER)
                recorded += 1
            meter = closing

    failures = len(service.recalculation.drain())
    return f"{len(DEMO_PUMPS)} pumps, {recorded} readings, {failures} failed recalculations"
