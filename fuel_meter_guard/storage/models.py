"""
Data models for storage layer.

Defines the pump, meter reading and daily calculation entities.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

VOLUME_QUANTUM = Decimal("0.1")
MONEY_QUANTUM = Decimal("0.01")
PERCENT_QUANTUM = Decimal("0.01")


def quantize_volume(value: Decimal) -> Decimal:
    """Round a meter value or volume to one decimal place."""
    return Decimal(value).quantize(VOLUME_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_money(value: Decimal) -> Decimal:
    """Round a price or revenue amount to two decimal places."""
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_percent(value: Decimal) -> Decimal:
    """Round a percentage to two decimal places."""
    return Decimal(value).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


class PumpStatus(Enum):
    """Operational status of a pump."""
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


class ReadingType(Enum):
    """Which end of the business day a reading was taken at."""
    OPENING = "opening"
    CLOSING = "closing"


class EstimationMethod(Enum):
    """Fallback tier that produced an estimated figure."""
    TRANSACTION_BASED = "transaction_based"
    HISTORICAL_AVERAGE = "historical_average"
    MANUAL = "manual"


class CalculationMethod(Enum):
    """Source of a daily calculation's volume.

    TRANSACTION_BASED marks station days sourced from the sales ledger so
    reporting can combine figures without double counting.
    """
    METER_ACTUAL = "meter_actual"
    ESTIMATED = "estimated"
    TRANSACTION_BASED = "transaction_based"


class ApprovalDecision(Enum):
    """Outcome of a manager decision on an estimated calculation."""
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PumpConfiguration:
    """A dispenser with a cumulative meter that wraps at meter_capacity."""
    id: int
    station_id: str
    product_id: str
    label: str
    meter_capacity: Decimal
    install_date: date
    status: PumpStatus = PumpStatus.ACTIVE
    is_active: bool = True
    last_calibration_date: Optional[date] = None

    def __post_init__(self):
        """Validate capacity is positive."""
        if self.meter_capacity <= 0:
            raise ValueError("meter_capacity must be > 0")


@dataclass(frozen=True)
class MeterReading:
    """Opening or closing meter value for one pump on one business day.

    original_value holds the first recorded value once the reading has been
    modified and is never overwritten afterwards.
    """
    id: int
    pump_id: int
    reading_date: date
    reading_type: ReadingType
    meter_value: Decimal
    recorded_by: str
    recorded_at: datetime
    is_estimated: bool = False
    estimation_method: Optional[EstimationMethod] = None
    notes: Optional[str] = None
    is_modified: bool = False
    original_value: Optional[Decimal] = None
    modified_by: Optional[str] = None
    modified_at: Optional[datetime] = None


@dataclass(frozen=True)
class DailyCalculation:
    """Volume and revenue dispensed by one pump on one business day."""
    id: Optional[int]
    pump_id: int
    calculation_date: date
    opening_reading: Decimal
    closing_reading: Decimal
    volume_dispensed: Decimal
    unit_price: Decimal
    total_revenue: Decimal
    has_rollover: bool
    rollover_value: Optional[Decimal]
    deviation_from_average: Decimal
    is_estimated: bool
    calculation_method: CalculationMethod
    calculated_by: str
    calculated_at: datetime
    estimation_method: Optional[EstimationMethod] = None
    needs_attention: bool = False
    notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_decision: Optional[ApprovalDecision] = None
    approval_notes: Optional[str] = None

    def __post_init__(self):
        """Validate dispensed volume is never negative."""
        if self.volume_dispensed < 0:
            raise ValueError("volume_dispensed cannot be negative")
