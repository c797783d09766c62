from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, Text, func, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.api.models.base import Base


class BusStatus(str, enum.Enum):
    """Operational status values matching the `bus_status` enum."""

    active = "active"
    inactive = "inactive"
    maintenance = "maintenance"
    out_of_service = "out_of_service"


class Route(Base):
    """
    ORM model for the `routes` table.

    Routes are managed outside the tracking core; buses only reference them.
    """

    __tablename__ = "routes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    # [{"name": ..., "latitude": ..., "longitude": ..., "order": ...}]
    stops: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class Bus(Base):
    """
    ORM model for the `buses` table.

    Notes:
    - driver_id is unique: a driver holds at most one active bus assignment.
    - tracking_enabled gates whether location reports are accepted for the bus.
    """

    __tablename__ = "buses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    number_plate: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)

    route_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("routes.id", ondelete="SET NULL"),
        nullable=True,
    )
    driver_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
        index=True,
    )

    status: Mapped[BusStatus] = mapped_column(
        Enum(BusStatus, name="bus_status"),
        nullable=False,
        default=BusStatus.active,
        server_default=BusStatus.active.value,
    )
    tracking_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    route = relationship("Route", lazy="joined")
    driver = relationship("User", lazy="joined")
