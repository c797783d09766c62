from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.access import is_assigned_driver, role_of, visible_buses
from src.api.db import get_db
from src.api.deps import get_current_user
from src.api.errors import Forbidden, NotFound
from src.api.models.bus import Bus
from src.api.models.user import User, UserRole
from src.api.schemas.bus import BusListResponse, BusPublic, TrackingUpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bus", tags=["buses"])


def _to_public(bus: Bus) -> BusPublic:
    """Convert ORM Bus row to public schema."""
    return BusPublic(
        id=bus.id,
        number_plate=bus.number_plate,
        capacity=bus.capacity,
        route_id=bus.route_id,
        driver_id=bus.driver_id,
        status=bus.status,
        tracking_enabled=bool(bus.tracking_enabled),
    )


@router.get(
    "",
    response_model=BusListResponse,
    summary="List visible buses",
    description="Admins see every bus, drivers their assigned bus, parents the buses their students ride.",
    operation_id="buses_list",
)
def list_buses(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> BusListResponse:
    return BusListResponse(buses=[_to_public(b) for b in visible_buses(db, current_user)])


@router.patch(
    "/{bus_id}/tracking",
    response_model=BusPublic,
    summary="Toggle live tracking",
    description="Admins may toggle any bus; a driver may toggle only their assigned bus.",
    operation_id="buses_update_tracking",
)
def update_tracking(
    bus_id: int,
    payload: TrackingUpdateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> BusPublic:
    """
    Enable or disable location ingestion for a bus.

    Errors:
    - 403 caller is neither admin nor the assigned driver
    - 404 bus not found (admins only; drivers get 403)
    """
    bus = db.get(Bus, bus_id)
    role_value = role_of(current_user)
    if role_value == UserRole.admin.value:
        if bus is None:
            raise NotFound("Bus not found.")
    elif bus is None or not is_assigned_driver(current_user, bus):
        raise Forbidden("You are not assigned to this bus")

    bus.tracking_enabled = payload.tracking_enabled
    db.add(bus)
    db.commit()
    db.refresh(bus)
    logger.info("Bus %s tracking_enabled=%s by user %s", bus.id, bus.tracking_enabled, current_user.id)
    return _to_public(bus)
