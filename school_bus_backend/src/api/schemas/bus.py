from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from src.api.models.bus import BusStatus


class BusPublic(BaseModel):
    id: int = Field(..., description="Bus id.")
    number_plate: str = Field(..., description="Registration plate.")
    capacity: int = Field(..., description="Seat capacity.")
    route_id: Optional[int] = Field(default=None, description="Assigned route id (nullable).")
    driver_id: Optional[int] = Field(default=None, description="Assigned driver user id (nullable).")
    status: BusStatus = Field(..., description="Operational status.")
    tracking_enabled: bool = Field(..., description="Whether location reports are accepted for this bus.")


class BusListResponse(BaseModel):
    buses: List[BusPublic] = Field(..., description="Buses visible to the caller.")


class TrackingUpdateRequest(BaseModel):
    tracking_enabled: bool = Field(..., strict=True, description="Enable or disable live tracking.")
