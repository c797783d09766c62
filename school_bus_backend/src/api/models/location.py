from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column

from src.api.models.base import Base


class Location(Base):
    """
    ORM model for the append-only `locations` table.

    Rows are never updated or deleted; created_at is assigned by the location
    store and strictly increases per bus.
    """

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    bus_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("buses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    # km/h
    speed: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# Latest/history reads scan one bus newest-first.
Index("idx_locations_bus_created_at", Location.bus_id, Location.created_at.desc())
