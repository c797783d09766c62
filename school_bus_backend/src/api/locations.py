"""
Append-only location store.

Wraps a SQLAlchemy session and exposes the three reads/writes the tracking core
needs: append a report, fetch the latest report for a bus, and fetch a bounded
newest-first history. Rows are never updated or deleted.

All methods are synchronous. Handlers move them off the event loop with one of:

- `call_store`: runs on the caller's session and is awaited to completion.
  Writes and socket-session lookups use it; Postgres bounds each statement with
  `statement_timeout` (see src.api.db).
- `query_store`: HTTP reads. The call gets its own session and is abandoned
  after STORE_TIMEOUT_SECONDS; a late worker only touches that private session.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Tuple, TypeVar

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from src.api.db import STORE_TIMEOUT_SECONDS, SessionLocal
from src.api.errors import NotFound, StoreUnavailable, ValidationError
from src.api.models.bus import Bus
from src.api.models.location import Location

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100

T = TypeVar("T")

# Appends for one bus are serialized in-process; the bus row lock covers other workers.
_append_locks: Dict[int, threading.Lock] = {}
_append_locks_guard = threading.Lock()


def _append_lock(bus_id: int) -> threading.Lock:
    with _append_locks_guard:
        return _append_locks.setdefault(bus_id, threading.Lock())


def _utcnow() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require_finite(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number.")
    return float(value)


# PUBLIC_INTERFACE
async def call_store(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store/resolver call in the threadpool and wait for it to finish."""
    return await run_in_threadpool(fn, *args, **kwargs)


def _with_private_session(fn: Callable[..., T], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> T:
    db = SessionLocal()
    try:
        return fn(db, *args, **kwargs)
    finally:
        db.close()


# PUBLIC_INTERFACE
async def query_store(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a read-only `fn(db, *args, **kwargs)` on a fresh session, bounded by STORE_TIMEOUT_SECONDS.

    Returned ORM objects are detached but keep their loaded attributes.

    Raises:
        StoreUnavailable: if the call does not complete in time.
    """
    try:
        return await asyncio.wait_for(
            run_in_threadpool(_with_private_session, fn, args, kwargs),
            timeout=STORE_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.warning("Store read %s timed out after %ss", getattr(fn, "__name__", fn), STORE_TIMEOUT_SECONDS)
        raise StoreUnavailable("Location store timed out.")


class LocationStore:
    """Durable, append-only record of bus positions."""

    def __init__(self, db: Session):
        self._db = db

    def _latest_row(self, bus_id: int) -> Location | None:
        stmt = (
            select(Location)
            .where(Location.bus_id == bus_id)
            .order_by(desc(Location.created_at), desc(Location.id))
            .limit(1)
        )
        return self._db.scalar(stmt)

    # PUBLIC_INTERFACE
    def append(self, bus_id: int, latitude: float, longitude: float, speed: float = 0.0) -> Location:
        """
        Persist one location report and return the stored row.

        The timestamp is assigned here. If the clock has not moved past the bus's
        previous report, the new one is stamped one microsecond after it so that
        per-bus timestamps strictly increase. Appends for the same bus run one at a
        time, so concurrent reports never read the same previous timestamp.

        Raises:
            ValidationError: non-finite coordinates/speed, negative speed, or unknown bus.
            StoreUnavailable: on any database error (the transaction is rolled back).
        """
        lat = _require_finite("latitude", latitude)
        lng = _require_finite("longitude", longitude)
        spd = _require_finite("speed", speed if speed is not None else 0.0)
        if spd < 0:
            raise ValidationError("speed must be non-negative.")

        with _append_lock(bus_id):
            try:
                # Row lock on the bus (a no-op on SQLite) until commit.
                locked = self._db.scalar(select(Bus.id).where(Bus.id == bus_id).with_for_update())
                if locked is None:
                    raise ValidationError(f"Bus {bus_id} does not exist.")

                stamp = _utcnow()
                previous = self._latest_row(bus_id)
                if previous is not None:
                    floor = as_utc(previous.created_at)
                    if stamp <= floor:
                        stamp = floor + timedelta(microseconds=1)

                row = Location(bus_id=bus_id, latitude=lat, longitude=lng, speed=spd, created_at=stamp)
                self._db.add(row)
                self._db.commit()
                self._db.refresh(row)
            except SQLAlchemyError as exc:
                self._db.rollback()
                logger.exception("Failed to append location for bus %s", bus_id)
                raise StoreUnavailable("Failed to persist location.") from exc

        logger.debug("Stored location %s for bus %s", row.id, bus_id)
        return row

    # PUBLIC_INTERFACE
    def latest(self, bus_id: int) -> Location:
        """
        Return the report with the greatest timestamp for bus_id.

        Raises:
            NotFound: if the bus has no recorded location.
        """
        try:
            row = self._latest_row(bus_id)
        except SQLAlchemyError as exc:
            logger.exception("Failed to read latest location for bus %s", bus_id)
            raise StoreUnavailable() from exc
        if row is None:
            raise NotFound("Location not found.")
        return row

    # PUBLIC_INTERFACE
    def history(self, bus_id: int, limit: int = DEFAULT_HISTORY_LIMIT) -> List[Location]:
        """Return at most `limit` reports for bus_id, most recent first."""
        if limit < 1:
            raise ValidationError("limit must be a positive integer.")
        stmt = (
            select(Location)
            .where(Location.bus_id == bus_id)
            .order_by(desc(Location.created_at), desc(Location.id))
            .limit(limit)
        )
        try:
            return list(self._db.scalars(stmt).all())
        except SQLAlchemyError as exc:
            logger.exception("Failed to read location history for bus %s", bus_id)
            raise StoreUnavailable() from exc

    # PUBLIC_INTERFACE
    def active_buses(self) -> List[Tuple[Bus, Location]]:
        """
        Return (bus, latest location) for every bus that has reported at least once.

        One latest() lookup per bus; fleets are small enough that no pagination is needed.
        """
        try:
            buses = list(self._db.scalars(select(Bus).order_by(Bus.id)).all())
            pairs: List[Tuple[Bus, Location]] = []
            for bus in buses:
                row = self._latest_row(bus.id)
                if row is not None:
                    pairs.append((bus, row))
            return pairs
        except SQLAlchemyError as exc:
            logger.exception("Failed to scan active buses")
            raise StoreUnavailable() from exc
