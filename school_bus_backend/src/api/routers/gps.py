"""
Location ingestion and query endpoints.

POST /gps persists a report from the bus's assigned driver and then publishes it
to the bus room. Reads share one observation rule (see src.api.access) and run on
their own session under the store timeout.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from src.api.access import ensure_can_ingest, ensure_can_observe
from src.api.db import get_db
from src.api.deps import get_broker, get_current_user, require_admin
from src.api.locations import DEFAULT_HISTORY_LIMIT, LocationStore, as_utc, call_store, query_store
from src.api.models.bus import Bus
from src.api.models.location import Location
from src.api.models.user import User
from src.api.realtime import BusRoomBroker, publish_location
from src.api.schemas.location import (
    ActiveBus,
    ActiveBusesResponse,
    LocationEvent,
    LocationHistoryResponse,
    LocationPublic,
    LocationReportRequest,
    LocationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gps", tags=["gps"])

MAX_HISTORY_LIMIT = 1000


def _to_public(row: Location) -> LocationPublic:
    """Convert ORM Location row to public schema."""
    return LocationPublic(
        id=row.id,
        bus_id=row.bus_id,
        latitude=float(row.latitude),
        longitude=float(row.longitude),
        speed=float(row.speed),
        created_at=as_utc(row.created_at),
    )


def _authorize_and_append(db: Session, user: User, payload: LocationReportRequest) -> Location:
    """Authorization runs before the store is touched; nothing is written on rejection."""
    ensure_can_ingest(db, user, payload.bus_id)
    return LocationStore(db).append(payload.bus_id, payload.latitude, payload.longitude, payload.speed)


def _observe_latest(db: Session, user: User, bus_id: int) -> Location:
    ensure_can_observe(db, user, bus_id)
    return LocationStore(db).latest(bus_id)


def _observe_history(db: Session, user: User, bus_id: int, limit: int) -> list[Location]:
    ensure_can_observe(db, user, bus_id)
    return LocationStore(db).history(bus_id, limit)


def _active_buses(db: Session) -> list[tuple[Bus, Location]]:
    return LocationStore(db).active_buses()


@router.post(
    "",
    response_model=LocationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report bus location",
    description="Assigned driver reports the bus position; it is stored and pushed to the bus room.",
    operation_id="gps_report_location",
)
async def report_location(
    payload: LocationReportRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    broker: BusRoomBroker = Depends(get_broker),
) -> LocationResponse:
    """
    Ingest a location report.

    Auth:
    - Bearer JWT required
    - caller must be the bus's assigned driver, and the bus must have tracking enabled

    Errors:
    - 400 malformed body
    - 403 not the assigned driver / tracking disabled
    - 500 store failure (nothing is published)
    """
    user_id = current_user.id
    row = await call_store(_authorize_and_append, db, current_user, payload)
    location = _to_public(row)
    logger.debug("Accepted location %s for bus %s from user %s", row.id, row.bus_id, user_id)

    await publish_location(
        broker,
        LocationEvent(
            bus_id=location.bus_id,
            latitude=location.latitude,
            longitude=location.longitude,
            speed=location.speed,
            timestamp=location.created_at,
        ),
    )
    return LocationResponse(location=location)


@router.get(
    "/all/active",
    response_model=ActiveBusesResponse,
    summary="List buses with a recorded location",
    description="Admin-only scan returning each bus's latest location, skipping buses that never reported.",
    operation_id="gps_list_active",
)
async def list_active_buses(
    current_user: User = Depends(require_admin),
) -> ActiveBusesResponse:
    pairs = await query_store(_active_buses)
    return ActiveBusesResponse(
        activeBuses=[
            ActiveBus(bus_id=bus.id, number_plate=bus.number_plate, location=_to_public(row)) for bus, row in pairs
        ]
    )


@router.get(
    "/{bus_id}",
    response_model=LocationResponse,
    summary="Latest bus location",
    description="Return the most recent recorded location of a bus the caller may observe.",
    operation_id="gps_get_latest",
)
async def get_latest_location(
    bus_id: int,
    current_user: User = Depends(get_current_user),
) -> LocationResponse:
    """
    Authorization:
    - admin: any bus; driver: assigned bus; parent: a bus one of their students rides
    """
    row = await query_store(_observe_latest, current_user, bus_id)
    return LocationResponse(location=_to_public(row))


@router.get(
    "/{bus_id}/history",
    response_model=LocationHistoryResponse,
    summary="Bus location history",
    description="Return up to `limit` recorded locations, most recent first.",
    operation_id="gps_get_history",
)
async def get_location_history(
    bus_id: int,
    limit: int = Query(default=DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT, description="Max reports to return."),
    current_user: User = Depends(get_current_user),
) -> LocationHistoryResponse:
    rows = await query_store(_observe_history, current_user, bus_id, limit)
    return LocationHistoryResponse(locations=[_to_public(r) for r in rows])
