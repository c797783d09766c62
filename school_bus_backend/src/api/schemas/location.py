from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class LocationReportRequest(BaseModel):
    bus_id: int = Field(..., strict=True, description="Bus the report belongs to.")
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False, description="Latitude in degrees.")
    longitude: float = Field(
        ..., ge=-180, le=180, allow_inf_nan=False, description="Longitude in degrees."
    )
    speed: float = Field(default=0.0, ge=0, allow_inf_nan=False, description="Speed in km/h.")


class LocationPublic(BaseModel):
    id: int = Field(..., description="Location report id.")
    bus_id: int = Field(..., description="Bus id.")
    latitude: float = Field(..., description="Latitude in degrees.")
    longitude: float = Field(..., description="Longitude in degrees.")
    speed: float = Field(..., description="Speed in km/h.")
    created_at: datetime = Field(..., description="When the server recorded the report (UTC).")


class LocationResponse(BaseModel):
    location: LocationPublic


class LocationHistoryResponse(BaseModel):
    locations: List[LocationPublic] = Field(..., description="Reports, most recent first.")


class ActiveBus(BaseModel):
    bus_id: int = Field(..., description="Bus id.")
    number_plate: str = Field(..., description="Registration plate.")
    location: LocationPublic = Field(..., description="Latest recorded location.")


class ActiveBusesResponse(BaseModel):
    activeBuses: List[ActiveBus] = Field(..., description="Buses with at least one recorded location.")


class LocationEvent(BaseModel):
    """
    Payload of the `location-update` socket event.

    Serialized with camelCase `busId`; accepts either spelling on input.
    """

    model_config = ConfigDict(populate_by_name=True)

    bus_id: int = Field(..., strict=True, alias="busId")
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    speed: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    timestamp: Optional[datetime] = None
    # "server" for persisted reports, "client" for unverified hints.
    source: Literal["server", "client"] = "server"
