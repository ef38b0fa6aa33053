"""
Repository pattern for data access.

Handles persistence of pumps, meter readings and daily calculations.
"""

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ApprovalDecision,
    CalculationMethod,
    DailyCalculation,
    EstimationMethod,
    MeterReading,
    PumpConfiguration,
    PumpStatus,
    ReadingType,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS pump_configuration (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        station_id TEXT NOT NULL,
        product_id TEXT NOT NULL,
        label TEXT NOT NULL,
        meter_capacity TEXT NOT NULL,
        install_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        is_active INTEGER NOT NULL DEFAULT 1,
        last_calibration_date TEXT,
        UNIQUE (station_id, label)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS meter_reading (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pump_id INTEGER NOT NULL REFERENCES pump_configuration(id),
        reading_date TEXT NOT NULL,
        reading_type TEXT NOT NULL CHECK (reading_type IN ('opening', 'closing')),
        meter_value TEXT NOT NULL,
        recorded_by TEXT NOT NULL,
        recorded_at TEXT NOT NULL,
        is_estimated INTEGER NOT NULL DEFAULT 0,
        estimation_method TEXT,
        notes TEXT,
        is_modified INTEGER NOT NULL DEFAULT 0,
        original_value TEXT,
        modified_by TEXT,
        modified_at TEXT,
        UNIQUE (pump_id, reading_date, reading_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_calculation (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pump_id INTEGER NOT NULL REFERENCES pump_configuration(id),
        calculation_date TEXT NOT NULL,
        opening_reading TEXT NOT NULL,
        closing_reading TEXT NOT NULL,
        volume_dispensed TEXT NOT NULL,
        unit_price TEXT NOT NULL,
        total_revenue TEXT NOT NULL,
        has_rollover INTEGER NOT NULL DEFAULT 0,
        rollover_value TEXT,
        deviation_from_average TEXT NOT NULL,
        is_estimated INTEGER NOT NULL DEFAULT 0,
        calculation_method TEXT NOT NULL,
        estimation_method TEXT,
        needs_attention INTEGER NOT NULL DEFAULT 0,
        notes TEXT,
        calculated_by TEXT NOT NULL,
        calculated_at TEXT NOT NULL,
        approved_by TEXT,
        approved_at TEXT,
        approval_decision TEXT,
        approval_notes TEXT,
        UNIQUE (pump_id, calculation_date)
    )
    """,
    "CREATE INDEX IF NOT EXISTS meter_reading_lookup ON meter_reading (pump_id, reading_date)",
    "CREATE INDEX IF NOT EXISTS daily_calculation_lookup ON daily_calculation (pump_id, calculation_date)",
)

_CALCULATION_COLUMNS = (
    "pump_id", "calculation_date", "opening_reading", "closing_reading",
    "volume_dispensed", "unit_price", "total_revenue", "has_rollover",
    "rollover_value", "deviation_from_average", "is_estimated",
    "calculation_method", "estimation_method", "needs_attention", "notes",
    "calculated_by", "calculated_at", "approved_by", "approved_at",
    "approval_decision", "approval_notes",
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the pump, reading and calculation tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


def _opt_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _opt_str(value) -> Optional[str]:
    return str(value) if value is not None else None


def _opt_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _opt_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _opt_iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _row_to_pump(row: sqlite3.Row) -> PumpConfiguration:
    return PumpConfiguration(
        id=row["id"],
        station_id=row["station_id"],
        product_id=row["product_id"],
        label=row["label"],
        meter_capacity=Decimal(row["meter_capacity"]),
        install_date=date.fromisoformat(row["install_date"]),
        status=PumpStatus(row["status"]),
        is_active=bool(row["is_active"]),
        last_calibration_date=_opt_date(row["last_calibration_date"]),
    )


def _row_to_reading(row: sqlite3.Row) -> MeterReading:
    method = row["estimation_method"]
    return MeterReading(
        id=row["id"],
        pump_id=row["pump_id"],
        reading_date=date.fromisoformat(row["reading_date"]),
        reading_type=ReadingType(row["reading_type"]),
        meter_value=Decimal(row["meter_value"]),
        recorded_by=row["recorded_by"],
        recorded_at=datetime.fromisoformat(row["recorded_at"]),
        is_estimated=bool(row["is_estimated"]),
        estimation_method=EstimationMethod(method) if method else None,
        notes=row["notes"],
        is_modified=bool(row["is_modified"]),
        original_value=_opt_decimal(row["original_value"]),
        modified_by=row["modified_by"],
        modified_at=_opt_datetime(row["modified_at"]),
    )


def _row_to_calculation(row: sqlite3.Row) -> DailyCalculation:
    estimation = row["estimation_method"]
    decision = row["approval_decision"]
    return DailyCalculation(
        id=row["id"],
        pump_id=row["pump_id"],
        calculation_date=date.fromisoformat(row["calculation_date"]),
        opening_reading=Decimal(row["opening_reading"]),
        closing_reading=Decimal(row["closing_reading"]),
        volume_dispensed=Decimal(row["volume_dispensed"]),
        unit_price=Decimal(row["unit_price"]),
        total_revenue=Decimal(row["total_revenue"]),
        has_rollover=bool(row["has_rollover"]),
        rollover_value=_opt_decimal(row["rollover_value"]),
        deviation_from_average=Decimal(row["deviation_from_average"]),
        is_estimated=bool(row["is_estimated"]),
        calculation_method=CalculationMethod(row["calculation_method"]),
        estimation_method=EstimationMethod(estimation) if estimation else None,
        needs_attention=bool(row["needs_attention"]),
        notes=row["notes"],
        calculated_by=row["calculated_by"],
        calculated_at=datetime.fromisoformat(row["calculated_at"]),
        approved_by=row["approved_by"],
        approved_at=_opt_datetime(row["approved_at"]),
        approval_decision=ApprovalDecision(decision) if decision else None,
        approval_notes=row["approval_notes"],
    )


def _calculation_params(calc: DailyCalculation) -> tuple:
    return (
        calc.pump_id,
        calc.calculation_date.isoformat(),
        str(calc.opening_reading),
        str(calc.closing_reading),
        str(calc.volume_dispensed),
        str(calc.unit_price),
        str(calc.total_revenue),
        int(calc.has_rollover),
        _opt_str(calc.rollover_value),
        str(calc.deviation_from_average),
        int(calc.is_estimated),
        calc.calculation_method.value,
        calc.estimation_method.value if calc.estimation_method else None,
        int(calc.needs_attention),
        calc.notes,
        calc.calculated_by,
        calc.calculated_at.isoformat(),
        calc.approved_by,
        _opt_iso(calc.approved_at),
        calc.approval_decision.value if calc.approval_decision else None,
        calc.approval_notes,
    )


class MeterRepository:
    """Repository for pumps, meter readings and daily calculations.

    Each call opens its own connection unless one is passed in, which lets
    callers group several reads and writes under one write transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connection(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_connection(self.db_path)
        try:
            yield own
            own.commit()
        finally:
            own.close()

    def initialize(self) -> None:
        """Create the schema for this repository's database."""
        initialize_schema(self.db_path)

    # Pumps

    def insert_pump(
        self,
        station_id: str,
        product_id: str,
        label: str,
        meter_capacity: Decimal,
        install_date: date,
    ) -> PumpConfiguration:
        """Insert a new active pump.

        Raises:
            sqlite3.IntegrityError: If the label is already used at the station
        """
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pump_configuration
                (station_id, product_id, label, meter_capacity, install_date, status, is_active)
                VALUES (?, ?, ?, ?, ?, ?, 1)
                """,
                (station_id, product_id, label, str(meter_capacity),
                 install_date.isoformat(), PumpStatus.ACTIVE.value),
            )
            pump_id = cursor.lastrowid
            return self.get_pump(pump_id, conn=conn)

    def save_pump(self, pump: PumpConfiguration) -> PumpConfiguration:
        """Persist every mutable field of an existing pump."""
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE pump_configuration
                SET product_id = ?, label = ?, meter_capacity = ?, status = ?,
                    is_active = ?, last_calibration_date = ?
                WHERE id = ?
                """,
                (pump.product_id, pump.label, str(pump.meter_capacity),
                 pump.status.value, int(pump.is_active),
                 _opt_iso(pump.last_calibration_date), pump.id),
            )
            return self.get_pump(pump.id, conn=conn)

    def get_pump(self, pump_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[PumpConfiguration]:
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM pump_configuration WHERE id = ?", (pump_id,)
            ).fetchone()
            return _row_to_pump(row) if row else None

    def list_pumps(self, station_id: str, active_only: bool = False) -> List[PumpConfiguration]:
        """List pumps at a station ordered by label.

        Args:
            station_id: Station to list
            active_only: Only include pumps whose status is active

        Returns:
            List of pump configurations
        """
        query = "SELECT * FROM pump_configuration WHERE station_id = ?"
        params: list = [station_id]
        if active_only:
            query += " AND is_active = 1 AND status = ?"
            params.append(PumpStatus.ACTIVE.value)
        query += " ORDER BY label"
        with self._connection() as conn:
            return [_row_to_pump(row) for row in conn.execute(query, params).fetchall()]

    # Meter readings

    def insert_reading(
        self,
        pump_id: int,
        reading_date: date,
        reading_type: ReadingType,
        meter_value: Decimal,
        recorded_by: str,
        recorded_at: datetime,
        is_estimated: bool = False,
        estimation_method: Optional[EstimationMethod] = None,
        notes: Optional[str] = None,
    ) -> MeterReading:
        """Insert a reading in its own transaction.

        The UNIQUE (pump_id, reading_date, reading_type) constraint decides
        between concurrent writers for the same key.

        Raises:
            sqlite3.IntegrityError: If a reading already exists for the key
        """
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO meter_reading
                (pump_id, reading_date, reading_type, meter_value, recorded_by,
                 recorded_at, is_estimated, estimation_method, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (pump_id, reading_date.isoformat(), reading_type.value,
                 str(meter_value), recorded_by, recorded_at.isoformat(),
                 int(is_estimated),
                 estimation_method.value if estimation_method else None,
                 notes),
            )
            return self.get_reading(cursor.lastrowid, conn=conn)

    def save_reading(self, reading: MeterReading) -> MeterReading:
        """Persist the editable and audit fields of an existing reading.

        original_value is only written while still NULL, so the pristine
        value survives any number of later edits.
        """
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE meter_reading
                SET meter_value = ?, notes = ?, is_modified = ?,
                    original_value = COALESCE(original_value, ?),
                    modified_by = ?, modified_at = ?
                WHERE id = ?
                """,
                (str(reading.meter_value), reading.notes, int(reading.is_modified),
                 _opt_str(reading.original_value), reading.modified_by,
                 _opt_iso(reading.modified_at), reading.id),
            )
            return self.get_reading(reading.id, conn=conn)

    def get_reading(self, reading_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[MeterReading]:
        with self._connection(conn) as c:
            row = c.execute("SELECT * FROM meter_reading WHERE id = ?", (reading_id,)).fetchone()
            return _row_to_reading(row) if row else None

    def readings_for_day(
        self,
        pump_id: int,
        reading_date: date,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[MeterReading]:
        """Return the opening and/or closing readings of a pump for a date."""
        with self._connection(conn) as c:
            rows = c.execute(
                "SELECT * FROM meter_reading WHERE pump_id = ? AND reading_date = ? ORDER BY reading_type DESC",
                (pump_id, reading_date.isoformat()),
            ).fetchall()
            return [_row_to_reading(row) for row in rows]

    def find_reading(
        self,
        pump_id: int,
        reading_date: date,
        reading_type: ReadingType,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[MeterReading]:
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM meter_reading WHERE pump_id = ? AND reading_date = ? AND reading_type = ?",
                (pump_id, reading_date.isoformat(), reading_type.value),
            ).fetchone()
            return _row_to_reading(row) if row else None

    def list_readings(
        self,
        station_id: str,
        start_date: date,
        end_date: date,
        pump_id: Optional[int] = None,
    ) -> List[MeterReading]:
        """List readings for a station within an inclusive date range.

        Args:
            station_id: Station whose pumps to include
            start_date: First reading date
            end_date: Last reading date
            pump_id: Optional filter for a single pump

        Returns:
            Readings ordered by date, pump label and reading type
        """
        query = """
            SELECT r.* FROM meter_reading r
            JOIN pump_configuration p ON p.id = r.pump_id
            WHERE p.station_id = ? AND r.reading_date >= ? AND r.reading_date <= ?
        """
        params: list = [station_id, start_date.isoformat(), end_date.isoformat()]
        if pump_id is not None:
            query += " AND r.pump_id = ?"
            params.append(pump_id)
        query += " ORDER BY r.reading_date, p.label, r.reading_type DESC"
        with self._connection() as conn:
            return [_row_to_reading(row) for row in conn.execute(query, params).fetchall()]

    def previous_closing(
        self,
        pump_id: int,
        before_date: date,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[MeterReading]:
        """Most recent closing reading dated strictly before before_date."""
        with self._connection(conn) as c:
            row = c.execute(
                """
                SELECT * FROM meter_reading
                WHERE pump_id = ? AND reading_type = ? AND reading_date < ?
                ORDER BY reading_date DESC LIMIT 1
                """,
                (pump_id, ReadingType.CLOSING.value, before_date.isoformat()),
            ).fetchone()
            return _row_to_reading(row) if row else None

    # Daily calculations

    def get_calculation(
        self,
        calculation_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[DailyCalculation]:
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM daily_calculation WHERE id = ?", (calculation_id,)
            ).fetchone()
            return _row_to_calculation(row) if row else None

    def find_calculation(
        self,
        pump_id: int,
        calculation_date: date,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[DailyCalculation]:
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM daily_calculation WHERE pump_id = ? AND calculation_date = ?",
                (pump_id, calculation_date.isoformat()),
            ).fetchone()
            return _row_to_calculation(row) if row else None

    def upsert_calculation(
        self,
        calc: DailyCalculation,
        conn: Optional[sqlite3.Connection] = None,
    ) -> DailyCalculation:
        """Insert or replace the single calculation row for (pump, date).

        Args:
            calc: Calculation to store; its id is ignored
            conn: Connection holding the caller's write transaction

        Returns:
            The stored calculation with its id
        """
        columns = ", ".join(_CALCULATION_COLUMNS)
        placeholders = ", ".join("?" for _ in _CALCULATION_COLUMNS)
        updates = ", ".join(
            f"{col} = excluded.{col}"
            for col in _CALCULATION_COLUMNS
            if col not in ("pump_id", "calculation_date")
        )
        with self._connection(conn) as c:
            c.execute(
                f"""
                INSERT INTO daily_calculation ({columns}) VALUES ({placeholders})
                ON CONFLICT (pump_id, calculation_date) DO UPDATE SET {updates}
                """,
                _calculation_params(calc),
            )
            return self.find_calculation(calc.pump_id, calc.calculation_date, conn=c)

    def list_calculations(
        self,
        station_id: str,
        start_date: date,
        end_date: date,
        estimated_only: bool = False,
    ) -> List[DailyCalculation]:
        """List calculations for a station within an inclusive date range.

        Returns:
            Calculations ordered by date and pump label
        """
        query = """
            SELECT c.* FROM daily_calculation c
            JOIN pump_configuration p ON p.id = c.pump_id
            WHERE p.station_id = ? AND c.calculation_date >= ? AND c.calculation_date <= ?
        """
        params: list = [station_id, start_date.isoformat(), end_date.isoformat()]
        if estimated_only:
            query += " AND c.is_estimated = 1"
        query += " ORDER BY c.calculation_date, p.label"
        with self._connection() as conn:
            return [_row_to_calculation(row) for row in conn.execute(query, params).fetchall()]

    def recent_calculations(
        self,
        pump_id: int,
        before_date: date,
        limit: Optional[int] = None,
        since_date: Optional[date] = None,
        actual_only: bool = True,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[DailyCalculation]:
        """Calculations of a pump dated before before_date, newest first.

        Args:
            pump_id: Pump to look up
            before_date: Exclusive upper bound on calculation_date
            limit: Optional maximum number of rows
            since_date: Optional inclusive lower bound on calculation_date
            actual_only: Exclude estimated calculations
            conn: Optional connection to reuse
        """
        query = "SELECT * FROM daily_calculation WHERE pump_id = ? AND calculation_date < ?"
        params: list = [pump_id, before_date.isoformat()]
        if since_date is not None:
            query += " AND calculation_date >= ?"
            params.append(since_date.isoformat())
        if actual_only:
            query += " AND is_estimated = 0"
        query += " ORDER BY calculation_date DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection(conn) as c:
            return [_row_to_calculation(row) for row in c.execute(query, params).fetchall()]
