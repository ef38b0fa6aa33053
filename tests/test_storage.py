"""
Unit tests for storage layer.

Tests schema creation, uniqueness constraints and row round trips.
"""

import os
import sqlite3
import tempfile
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from fuel_meter_guard.storage.db import get_connection, write_transaction
from fuel_meter_guard.storage.models import (
    ApprovalDecision,
    CalculationMethod,
    DailyCalculation,
    EstimationMethod,
    ReadingType,
    quantize_money,
    quantize_volume,
)
from fuel_meter_guard.storage.repository import MeterRepository, initialize_schema

RECORDED_AT = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)


def _calculation(pump_id, day, volume="100.0", **overrides):
    fields = dict(
        id=None,
        pump_id=pump_id,
        calculation_date=day,
        opening_reading=Decimal("1000.0"),
        closing_reading=Decimal("1000.0") + Decimal(volume),
        volume_dispensed=Decimal(volume),
        unit_price=Decimal("617.00"),
        total_revenue=quantize_money(Decimal(volume) * Decimal("617.00")),
        has_rollover=False,
        rollover_value=None,
        deviation_from_average=Decimal("0.00"),
        is_estimated=False,
        calculation_method=CalculationMethod.METER_ACTUAL,
        calculated_by="system",
        calculated_at=RECORDED_AT,
    )
    fields.update(overrides)
    return DailyCalculation(**fields)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify all three tables are created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
                tables = {row[0] for row in cursor.fetchall()}
                assert {"pump_configuration", "meter_reading", "daily_calculation"} <= tables
            finally:
                conn.close()

    def test_schema_creation_is_repeatable(self):
        """Initializing twice leaves existing data alone."""
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = MeterRepository(os.path.join(temp_dir, "test.db"))
            repo.initialize()
            repo.insert_pump("STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1))
            repo.initialize()
            assert len(repo.list_pumps("STN-001")) == 1

    def test_reading_type_check_constraint(self):
        """Only opening and closing are accepted as reading types."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            repo = MeterRepository(db_path)
            repo.initialize()
            pump = repo.insert_pump("STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1))
            conn = get_connection(db_path)
            try:
                with pytest.raises(sqlite3.IntegrityError):
                    conn.execute(
                        """
                        INSERT INTO meter_reading
                        (pump_id, reading_date, reading_type, meter_value, recorded_by, recorded_at)
                        VALUES (?, '2024-01-15', 'midday', '1.0', 'ada', '2024-01-15T08:00:00')
                        """,
                        (pump.id,),
                    )
            finally:
                conn.close()


class TestPumpStorage:
    """Test pump persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo = MeterRepository(os.path.join(self.temp_dir.name, "test.db"))
        self.repo.initialize()

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_insert_and_get_pump(self):
        pump = self.repo.insert_pump("STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1))

        fetched = self.repo.get_pump(pump.id)
        assert fetched == pump
        assert fetched.meter_capacity == Decimal("999999.9")
        assert fetched.is_active

    def test_label_unique_per_station(self):
        self.repo.insert_pump("STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1))
        with pytest.raises(sqlite3.IntegrityError):
            self.repo.insert_pump("STN-001", "PMS", "Pump 1", Decimal("99999.9"), date(2023, 1, 1))

        # Same label at another station is fine
        other = self.repo.insert_pump("STN-002", "PMS", "Pump 1", Decimal("99999.9"), date(2023, 1, 1))
        assert other.station_id == "STN-002"

    def test_list_pumps_ordered_by_label(self):
        self.repo.insert_pump("STN-001", "PMS", "Pump 2", Decimal("999999.9"), date(2023, 1, 1))
        self.repo.insert_pump("STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1))

        labels = [p.label for p in self.repo.list_pumps("STN-001")]
        assert labels == ["Pump 1", "Pump 2"]

    def test_get_missing_pump(self):
        assert self.repo.get_pump(42) is None


class TestReadingStorage:
    """Test meter reading persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo = MeterRepository(os.path.join(self.temp_dir.name, "test.db"))
        self.repo.initialize()
        self.pump = self.repo.insert_pump(
            "STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1)
        )

    def teardown_method(self):
        self.temp_dir.cleanup()

    def _insert(self, day=date(2024, 1, 15), reading_type=ReadingType.OPENING, value="1000.0"):
        return self.repo.insert_reading(
            self.pump.id, day, reading_type, Decimal(value), "ada", RECORDED_AT
        )

    def test_reading_round_trip(self):
        """Every stored field comes back unchanged."""
        reading = self.repo.insert_reading(
            self.pump.id, date(2024, 1, 15), ReadingType.CLOSING, Decimal("1234.5"),
            "ada", RECORDED_AT, is_estimated=True,
            estimation_method=EstimationMethod.HISTORICAL_AVERAGE, notes="meter glass fogged",
        )

        fetched = self.repo.get_reading(reading.id)
        assert fetched == reading
        assert fetched.meter_value == Decimal("1234.5")
        assert fetched.recorded_at == RECORDED_AT
        assert fetched.estimation_method == EstimationMethod.HISTORICAL_AVERAGE
        assert fetched.notes == "meter glass fogged"
        assert not fetched.is_modified
        assert fetched.original_value is None

    def test_unique_per_pump_date_type(self):
        self._insert()
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(value="2000.0")

        # A closing for the same day is a different key
        closing = self._insert(reading_type=ReadingType.CLOSING, value="2000.0")
        assert closing.reading_type == ReadingType.CLOSING

    def test_original_value_written_once(self):
        """Later saves never overwrite the first original_value."""
        reading = self._insert(value="1000.0")

        first = self.repo.save_reading(replace(
            reading, meter_value=Decimal("1100.0"), is_modified=True,
            original_value=Decimal("1000.0"), modified_by="ada", modified_at=RECORDED_AT,
        ))
        second = self.repo.save_reading(replace(
            first, meter_value=Decimal("1200.0"), original_value=Decimal("1100.0"),
        ))

        assert second.meter_value == Decimal("1200.0")
        assert second.original_value == Decimal("1000.0")

    def test_readings_for_day_opening_first(self):
        self._insert(reading_type=ReadingType.CLOSING, value="2000.0")
        self._insert(reading_type=ReadingType.OPENING, value="1000.0")

        types = [r.reading_type for r in self.repo.readings_for_day(self.pump.id, date(2024, 1, 15))]
        assert types == [ReadingType.OPENING, ReadingType.CLOSING]

    def test_previous_closing_strictly_before(self):
        self._insert(day=date(2024, 1, 13), reading_type=ReadingType.CLOSING, value="900.0")
        self._insert(day=date(2024, 1, 14), reading_type=ReadingType.CLOSING, value="950.0")
        self._insert(day=date(2024, 1, 15), reading_type=ReadingType.CLOSING, value="999.0")

        previous = self.repo.previous_closing(self.pump.id, date(2024, 1, 15))
        assert previous.meter_value == Decimal("950.0")
        assert self.repo.previous_closing(self.pump.id, date(2024, 1, 13)) is None

    def test_list_readings_date_range(self):
        self._insert(day=date(2024, 1, 14))
        self._insert(day=date(2024, 1, 15))
        self._insert(day=date(2024, 1, 16))

        readings = self.repo.list_readings("STN-001", date(2024, 1, 15), date(2024, 1, 16))
        assert [r.reading_date for r in readings] == [date(2024, 1, 15), date(2024, 1, 16)]
        assert self.repo.list_readings("STN-002", date(2024, 1, 1), date(2024, 2, 1)) == []


class TestCalculationStorage:
    """Test daily calculation persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo = MeterRepository(os.path.join(self.temp_dir.name, "test.db"))
        self.repo.initialize()
        self.pump = self.repo.insert_pump(
            "STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1)
        )

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_calculation_round_trip(self):
        calc = _calculation(
            self.pump.id, date(2024, 1, 15),
            is_estimated=True,
            calculation_method=CalculationMethod.ESTIMATED,
            estimation_method=EstimationMethod.TRANSACTION_BASED,
            needs_attention=True,
            notes="estimated",
            approved_by="musa",
            approved_at=RECORDED_AT,
            approval_decision=ApprovalDecision.REJECTED,
            approval_notes="too high",
        )

        stored = self.repo.upsert_calculation(calc)
        assert stored.id is not None
        assert replace(stored, id=None) == calc

    def test_upsert_keeps_one_row_per_pump_and_date(self):
        first = self.repo.upsert_calculation(_calculation(self.pump.id, date(2024, 1, 15), "100.0"))
        second = self.repo.upsert_calculation(_calculation(self.pump.id, date(2024, 1, 15), "150.0"))

        assert first.id == second.id
        assert second.volume_dispensed == Decimal("150.0")
        rows = self.repo.list_calculations("STN-001", date(2024, 1, 1), date(2024, 1, 31))
        assert len(rows) == 1

    def test_recent_calculations_filters(self):
        for day, estimated in ((10, False), (11, True), (12, False), (13, False)):
            self.repo.upsert_calculation(_calculation(
                self.pump.id, date(2024, 1, day), is_estimated=estimated,
                calculation_method=CalculationMethod.ESTIMATED if estimated else CalculationMethod.METER_ACTUAL,
            ))

        actual = self.repo.recent_calculations(self.pump.id, before_date=date(2024, 1, 13))
        assert [c.calculation_date.day for c in actual] == [12, 10]

        everything = self.repo.recent_calculations(
            self.pump.id, before_date=date(2024, 1, 14), actual_only=False, limit=2
        )
        assert [c.calculation_date.day for c in everything] == [13, 12]

        windowed = self.repo.recent_calculations(
            self.pump.id, before_date=date(2024, 1, 14), since_date=date(2024, 1, 12)
        )
        assert [c.calculation_date.day for c in windowed] == [13, 12]

    def test_list_estimated_only(self):
        self.repo.upsert_calculation(_calculation(self.pump.id, date(2024, 1, 14)))
        self.repo.upsert_calculation(_calculation(
            self.pump.id, date(2024, 1, 15), is_estimated=True,
            calculation_method=CalculationMethod.ESTIMATED,
        ))

        rows = self.repo.list_calculations(
            "STN-001", date(2024, 1, 1), date(2024, 1, 31), estimated_only=True
        )
        assert [c.calculation_date for c in rows] == [date(2024, 1, 15)]


class TestWriteTransaction:
    """Test write transaction semantics."""

    def test_rollback_on_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            repo = MeterRepository(db_path)
            repo.initialize()
            pump = repo.insert_pump("STN-001", "PMS", "Pump 1", Decimal("999999.9"), date(2023, 1, 1))

            with pytest.raises(RuntimeError):
                with write_transaction(db_path) as conn:
                    repo.upsert_calculation(_calculation(pump.id, date(2024, 1, 15)), conn=conn)
                    raise RuntimeError("boom")

            assert repo.find_calculation(pump.id, date(2024, 1, 15)) is None


class TestQuantization:
    """Test decimal rounding helpers."""

    def test_volume_rounds_half_up(self):
        assert quantize_volume(Decimal("10.05")) == Decimal("10.1")
        assert quantize_volume(Decimal("10.04")) == Decimal("10.0")

    def test_money_rounds_half_up(self):
        assert quantize_money(Decimal("2.005")) == Decimal("2.01")
