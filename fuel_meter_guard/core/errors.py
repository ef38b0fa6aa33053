"""
Error types raised by the meter calculation engine.

Every foreground failure is one of these; the service facade and the CLI
turn them into explicit failure results.
"""

from decimal import Decimal, InvalidOperation

# Keeps volume x price within the default decimal precision.
MAX_NUMERIC_VALUE = Decimal("1e12")


class MeterGuardError(Exception):
    """Base class for all user-correctable meter engine failures."""
    kind = "error"


class ValidationError(MeterGuardError, ValueError):
    """Malformed, missing or out-of-range input."""
    kind = "validation"


class AuthorizationError(MeterGuardError):
    """Unauthenticated caller, wrong or blocked role, or cross-station access."""
    kind = "authorization"


class CapacityError(ValidationError):
    """Meter value exceeds the pump's meter capacity."""
    kind = "capacity"

    def __init__(self, value, capacity):
        super().__init__(f"Meter value {value} exceeds pump capacity of {capacity}")
        self.value = value
        self.capacity = capacity


class ConflictError(MeterGuardError):
    """A record already exists for the same natural key."""
    kind = "conflict"


class NotFoundError(MeterGuardError):
    """Referenced pump, reading or calculation does not exist."""
    kind = "not_found"


class WindowExpiredError(MeterGuardError):
    """Edit attempted after the modification cutoff without an override."""
    kind = "window_expired"

    def __init__(self, deadline):
        super().__init__(
            "Modification window expired. Readings can only be modified until "
            f"{deadline:%A %Y-%m-%d %H:%M} local time without a manager override."
        )
        self.deadline = deadline


class StateError(MeterGuardError):
    """Operation not allowed in the calculation's current state."""
    kind = "state"


class BackgroundCalculationError(MeterGuardError):
    """Automatic recalculation after a reading write failed.

    Only ever logged and recorded by the post-commit hook, never raised to
    the writer.
    """
    kind = "background_calculation"

    def __init__(self, pump_id, calculation_date, cause):
        super().__init__(
            f"Automatic calculation failed for pump {pump_id} on "
            f"{calculation_date.isoformat()}: {cause}"
        )
        self.pump_id = pump_id
        self.calculation_date = calculation_date
        self.cause = cause


def require_decimal(value, name: str, allow_negative: bool = False) -> Decimal:
    """Coerce value to Decimal or raise ValidationError.

    Floats go through str() so 100.5 stays 100.5 rather than its binary
    expansion.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} is required and must be a number")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{name} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{name} must be a finite number")
    if abs(result) >= MAX_NUMERIC_VALUE:
        raise ValidationError(f"{name} must be below {MAX_NUMERIC_VALUE:f}")
    if not allow_negative and result < 0:
        raise ValidationError(f"{name} cannot be negative")
    return result
