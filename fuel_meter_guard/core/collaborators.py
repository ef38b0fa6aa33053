"""
External collaborators consumed by the calculation engine.

Product pricing, the legacy sales ledger and identity resolution live
outside this package; these protocols describe what the engine needs from
them, with small implementations used by the CLI and tests.
"""

import sqlite3
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, FrozenSet, Mapping, Optional, Protocol, Tuple

from .errors import AuthorizationError, NotFoundError
from .permissions import Actor, Role
from fuel_meter_guard.storage.db import get_connection


class ProductCatalog(Protocol):
    """Read-only source of the current unit price per product."""

    def unit_price(self, product_id: str) -> Decimal:
        ...


class TransactionLedger(Protocol):
    """Read-only view of legacy PMS sales transactions."""

    def pms_quantity(self, station_id: str, sale_date: date) -> Optional[Decimal]:
        ...


class AuthGateway(Protocol):
    """Resolves a caller identity to an Actor."""

    def resolve(self, user_id: Optional[str]) -> Actor:
        ...


@dataclass(frozen=True)
class StaticProductCatalog:
    """Fixed price table, typically built from configuration."""
    prices: Mapping[str, Decimal]

    def unit_price(self, product_id: str) -> Decimal:
        """Get the unit price of a product.

        Raises:
            NotFoundError: If the product has no configured price
        """
        if product_id not in self.prices:
            raise NotFoundError(f"No unit price configured for product {product_id}")
        return Decimal(self.prices[product_id])


class SqliteTransactionLedger:
    """Sums quantities from a legacy pms_sales_transactions table.

    The table belongs to the point-of-sale system; when it has not been
    created in this database the ledger simply reports no data.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def pms_quantity(self, station_id: str, sale_date: date) -> Optional[Decimal]:
        conn = get_connection(self.db_path)
        try:
            try:
                rows = conn.execute(
                    """
                    SELECT quantity FROM pms_sales_transactions
                    WHERE station_id = ? AND sale_date = ?
                    """,
                    (station_id, sale_date.isoformat()),
                ).fetchall()
            except sqlite3.OperationalError as e:
                if "no such table" in str(e).lower():
                    return None
                raise
        finally:
            conn.close()
        if not rows:
            return None
        return sum((Decimal(str(row[0])) for row in rows), Decimal("0"))


@dataclass
class StaticAuthGateway:
    """Resolves user ids against a fixed table of (role, stations)."""
    users: Dict[str, Tuple[Role, Optional[FrozenSet[str]]]] = field(default_factory=dict)

    def resolve(self, user_id: Optional[str]) -> Actor:
        """Resolve a user id to an Actor.

        Raises:
            AuthorizationError: If the user is missing or unknown
        """
        if not user_id:
            raise AuthorizationError("Authentication required")
        if user_id not in self.users:
            raise AuthorizationError(f"Unknown user: {user_id}")
        role, stations = self.users[user_id]
        return Actor(user_id=user_id, role=role, station_ids=stations)
