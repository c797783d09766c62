"""
Authorization resolver for bus location data.

One observation predicate is shared by the query endpoints, the bus listing and
socket room joins; ingestion adds the assigned-driver requirement on top of the
same helper.
"""

from __future__ import annotations

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from src.api.errors import Forbidden, NotFound
from src.api.models.bus import Bus
from src.api.models.student import Student
from src.api.models.user import User, UserRole


def role_of(user: User) -> str:
    """Return the user's role as a plain string."""
    return user.role.value if hasattr(user.role, "value") else str(user.role)


def is_assigned_driver(user: User, bus: Bus) -> bool:
    return role_of(user) == UserRole.driver.value and bus.driver_id is not None and bus.driver_id == user.id


def _parent_has_child_on(db: Session, parent_id: int, bus_id: int) -> bool:
    stmt = select(exists().where(Student.parent_id == parent_id, Student.bus_id == bus_id))
    return bool(db.scalar(stmt))


# PUBLIC_INTERFACE
def can_observe(db: Session, user: User, bus: Bus) -> bool:
    """
    Observation rule.

    - admin: any bus
    - driver: only the bus they are assigned to
    - parent: buses that at least one of their students is assigned to
    - anyone else: nothing
    """
    role_value = role_of(user)
    if role_value == UserRole.admin.value:
        return True
    if role_value == UserRole.driver.value:
        return is_assigned_driver(user, bus)
    if role_value == UserRole.parent.value:
        return _parent_has_child_on(db, user.id, bus.id)
    return False


# PUBLIC_INTERFACE
def ensure_can_observe(db: Session, user: User, bus_id: int) -> Bus:
    """
    Return the bus if the user may see its location/history.

    Raises:
        NotFound: bus does not exist.
        Forbidden: bus exists but the user may not observe it.
    """
    bus = db.get(Bus, bus_id)
    if bus is None:
        raise NotFound("Bus not found.")
    if not can_observe(db, user, bus):
        raise Forbidden("Access denied")
    return bus


# PUBLIC_INTERFACE
def ensure_can_ingest(db: Session, user: User, bus_id: int) -> Bus:
    """
    Return the bus if the user may publish its location right now.

    Applies to persisted reports and to client hints alike: the caller must be
    the assigned driver and the bus must have tracking enabled. An unknown bus is
    reported as Forbidden, like any other mismatch, so a driver cannot probe
    which bus ids exist.
    """
    if role_of(user) != UserRole.driver.value:
        raise Forbidden("Driver role required.")
    bus = db.get(Bus, bus_id)
    if bus is None or not is_assigned_driver(user, bus):
        raise Forbidden("You are not assigned to this bus")
    if not bus.tracking_enabled:
        raise Forbidden("Tracking is disabled for this bus")
    return bus


# PUBLIC_INTERFACE
def visible_buses(db: Session, user: User) -> list[Bus]:
    """Return every bus the user may observe, ordered by id."""
    role_value = role_of(user)
    stmt = select(Bus).order_by(Bus.id)
    if role_value == UserRole.driver.value:
        stmt = stmt.where(Bus.driver_id == user.id)
    elif role_value == UserRole.parent.value:
        stmt = stmt.where(Bus.id.in_(select(Student.bus_id).where(Student.parent_id == user.id)))
    elif role_value != UserRole.admin.value:
        return []
    # The SQL narrows the scan; the shared predicate stays the authority.
    return [bus for bus in db.scalars(stmt).unique().all() if can_observe(db, user, bus)]
