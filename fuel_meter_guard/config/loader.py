"""
Configuration management and loading.

Handles station settings, thresholds, prices and users from YAML.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from fuel_meter_guard.core.errors import MAX_NUMERIC_VALUE
from fuel_meter_guard.core.permissions import Role


@dataclass(frozen=True)
class StorageConfig:
    """Where meter data is persisted."""
    db_path: str = "fuel_meter_guard.db"

    def __post_init__(self):
        """Validate path is not empty."""
        if not self.db_path or not str(self.db_path).strip():
            raise ValueError("db_path cannot be empty")


@dataclass(frozen=True)
class StationConfig:
    """Station-local settings.

    pms_products lists the product ids whose pumps are metered and
    calculated daily.
    """
    timezone: str = "Africa/Lagos"
    pms_products: Tuple[str, ...] = ("PMS",)

    def __post_init__(self):
        """Validate the timezone name resolves and PMS products are listed."""
        if not self.pms_products:
            raise ValueError("pms_products must list at least one product id")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {self.timezone}")

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class ModificationWindowConfig:
    """Hour of the next business day at which edits lock."""
    cutoff_hour: int = 6

    def __post_init__(self):
        """Validate cutoff hour is a clock hour."""
        if not 0 <= self.cutoff_hour <= 23:
            raise ValueError("cutoff_hour must be between 0 and 23")


@dataclass(frozen=True)
class DeviationConfig:
    """Severity band thresholds (percent) and default lookback."""
    moderate: float = 20.0
    high: float = 30.0
    critical: float = 50.0
    lookback_days: int = 7

    def __post_init__(self):
        """Validate bands are positive and strictly increasing."""
        if self.moderate <= 0:
            raise ValueError("moderate threshold must be > 0")
        if not self.moderate < self.high < self.critical:
            raise ValueError("thresholds must satisfy moderate < high < critical")
        if self.lookback_days <= 0:
            raise ValueError("lookback_days must be > 0")


@dataclass(frozen=True)
class EstimationConfig:
    """How many recent calculations feed the historical average."""
    history_size: int = 7

    def __post_init__(self):
        """Validate history size is positive."""
        if self.history_size <= 0:
            raise ValueError("history_size must be > 0")


@dataclass(frozen=True)
class UserConfig:
    """Role and station scope for a known user."""
    role: Role
    stations: Optional[FrozenSet[str]] = None


@dataclass(frozen=True)
class MeterGuardConfig:
    """Complete configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    station: StationConfig = field(default_factory=StationConfig)
    modification_window: ModificationWindowConfig = field(default_factory=ModificationWindowConfig)
    deviation: DeviationConfig = field(default_factory=DeviationConfig)
    estimation: EstimationConfig = field(default_factory=EstimationConfig)
    prices: Dict[str, Decimal] = field(default_factory=dict)
    users: Dict[str, UserConfig] = field(default_factory=dict)
    log_level: str = "INFO"


def default_config() -> MeterGuardConfig:
    """Configuration used when no file is supplied."""
    return MeterGuardConfig()


_SECTION_KEYS = {
    'storage': {'db_path'},
    'station': {'timezone', 'pms_products'},
    'modification_window': {'cutoff_hour'},
    'deviation': {'moderate', 'high', 'critical', 'lookback_days'},
    'estimation': {'history_size'},
    'logging': {'level'},
}
_VALID_LOG_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}


def load_config(path: str) -> MeterGuardConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys are rejected so that a typo cannot silently fall back to a
    default threshold.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = set(_SECTION_KEYS) | {'prices', 'users'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    deviation_data = sections['deviation']
    for key in ('moderate', 'high', 'critical'):
        if key in deviation_data:
            deviation_data[key] = _number(deviation_data[key], f"deviation.{key}")
    for section, key in (('deviation', 'lookback_days'),
                         ('estimation', 'history_size'),
                         ('modification_window', 'cutoff_hour')):
        if key in sections[section]:
            sections[section][key] = _integer(sections[section][key], f"{section}.{key}")

    if 'pms_products' in sections['station']:
        sections['station']['pms_products'] = _product_ids(sections['station']['pms_products'])

    log_level = str(sections['logging'].get('level', 'INFO')).upper()
    if log_level not in _VALID_LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of: {sorted(_VALID_LOG_LEVELS)}")

    return MeterGuardConfig(
        storage=StorageConfig(**sections['storage']),
        station=StationConfig(**sections['station']),
        modification_window=ModificationWindowConfig(**sections['modification_window']),
        deviation=DeviationConfig(**deviation_data),
        estimation=EstimationConfig(**sections['estimation']),
        prices=_parse_prices(raw_config.get('prices', {})),
        users=_parse_users(raw_config.get('users', {})),
        log_level=log_level,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    """Return a copy of an optional section, rejecting unknown keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return dict(data)


def _number(value, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _integer(value, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _product_ids(value) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(p, str) and p.strip() for p in value):
        raise ValueError("'station.pms_products' must be a list of product ids")
    return tuple(value)


def _parse_prices(data) -> Dict[str, Decimal]:
    """Parse product unit prices.

    Raises:
        ValueError: If a price is not a positive number
    """
    if not isinstance(data, dict):
        raise ValueError("'prices' must be a dictionary")
    prices = {}
    for product_id, raw_price in data.items():
        try:
            price = Decimal(str(raw_price))
        except InvalidOperation:
            raise ValueError(f"Price for product '{product_id}' must be a number")
        if isinstance(raw_price, bool) or not price.is_finite():
            raise ValueError(f"Price for product '{product_id}' must be a number")
        if not 0 < price < MAX_NUMERIC_VALUE:
            raise ValueError(
                f"Price for product '{product_id}' must be > 0 and below {MAX_NUMERIC_VALUE:f}"
            )
        prices[str(product_id)] = price
    return prices


def _parse_users(data) -> Dict[str, UserConfig]:
    """Parse user roles and optional station scopes.

    Raises:
        ValueError: If a user entry is malformed or has an unknown role
    """
    if not isinstance(data, dict):
        raise ValueError("'users' must be a dictionary")
    users = {}
    for user_id, user_data in data.items():
        path = f"users.{user_id}"
        if not isinstance(user_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(user_data.keys()) - {'role', 'stations'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if 'role' not in user_data:
            raise ValueError(f"Missing required 'role' in {path}")
        try:
            role = Role(str(user_data['role']).lower())
        except ValueError:
            valid_roles = [role.value for role in Role]
            raise ValueError(f"'role' in {path} must be one of: {valid_roles}")
        stations = user_data.get('stations')
        if stations is not None:
            if not isinstance(stations, list):
                raise ValueError(f"'stations' in {path} must be a list")
            stations = frozenset(str(s) for s in stations)
        users[str(user_id)] = UserConfig(role=role, stations=stations)
    return users
