"""
Role-based permission predicates.

Callers are plain Actor values carrying a role; what each role may do is
decided here by predicates, not by the type of the actor.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional

from .errors import AuthorizationError


class Role(Enum):
    """Roles resolved by the authentication gateway."""
    STAFF = "staff"
    MANAGER = "manager"
    DIRECTOR = "director"


# Directors have read-only access to meter data.
READING_WRITE_BLOCKED_ROLES = frozenset({Role.DIRECTOR})


@dataclass(frozen=True)
class Actor:
    """An authenticated caller.

    station_ids of None means the actor is not restricted to particular
    stations.
    """
    user_id: str
    role: Role
    station_ids: Optional[FrozenSet[str]] = None

    def __post_init__(self):
        """Validate the actor has an identity."""
        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id is required and cannot be empty")


def can_write_readings(actor: Actor) -> bool:
    return actor.role not in READING_WRITE_BLOCKED_ROLES


def can_approve(actor: Actor) -> bool:
    return actor.role == Role.MANAGER


def can_override_window(actor: Actor) -> bool:
    return actor.role == Role.MANAGER


def can_manage_pumps(actor: Actor) -> bool:
    return actor.role == Role.MANAGER


def can_access_station(actor: Actor, station_id: str) -> bool:
    return actor.station_ids is None or station_id in actor.station_ids


def require_authenticated(actor: Optional[Actor]) -> Actor:
    """Return the actor or raise if the caller is unauthenticated."""
    if actor is None:
        raise AuthorizationError("Authentication required")
    return actor


def require_reading_writer(actor: Optional[Actor], station_id: str) -> Actor:
    """Ensure the caller may record or modify readings at a station."""
    actor = require_authenticated(actor)
    if not can_write_readings(actor):
        raise AuthorizationError(
            f"Role '{actor.role.value}' cannot record or modify meter readings"
        )
    require_station_access(actor, station_id)
    return actor


def require_manager(actor: Optional[Actor], action: str) -> Actor:
    """Ensure the caller is a manager."""
    actor = require_authenticated(actor)
    if actor.role != Role.MANAGER:
        raise AuthorizationError(f"Only a manager can {action}")
    return actor


def require_station_access(actor: Actor, station_id: str) -> None:
    if not can_access_station(actor, station_id):
        raise AuthorizationError(
            f"User {actor.user_id} has no access to station {station_id}"
        )
