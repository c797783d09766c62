"""
In-memory, room-scoped pub/sub for live bus locations.

Each bus id owns a room: the set of subscribers currently joined to it. The
broker is created by the application lifespan and stored on `app.state.broker`;
shutdown closes every subscriber and clears all rooms.

Delivery is fire-and-forget. `publish` never awaits a socket: it enqueues the
event on each member's bounded outbound queue and a per-subscriber writer task
drains it. Enqueueing for a room happens under that room's lock, so two
publishes to the same room reach every member in publish order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Optional

import jwt
from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketDisconnect, WebSocketState

from src.api.access import ensure_can_ingest, ensure_can_observe, role_of
from src.api.errors import TrackingError, Unauthenticated, summarize_validation_errors
from src.api.locations import call_store
from src.api.models.user import User
from src.api.schemas.location import LocationEvent
from src.api.security import decode_token

logger = logging.getLogger(__name__)

# Heartbeat and backpressure behavior.
PING_INTERVAL_SECONDS = 20
SEND_TIMEOUT_SECONDS = 3
# When a client is slow for too long, disconnect to protect server memory/CPU.
MAX_CONSECUTIVE_SEND_TIMEOUTS = 3
MAX_PENDING_EVENTS = 256

ALLOW_CLIENT_LOCATION_HINTS = os.getenv("ALLOW_CLIENT_LOCATION_HINTS", "false").lower() in ("1", "true", "yes")

# Socket event names.
JOIN_EVENT = "join-bus-room"
LEAVE_EVENT = "leave-bus-room"
LOCATION_EVENT = "location-update"

_subscriber_ids = itertools.count(1)


def _close_code(code: int) -> int:
    """Ensure a valid close code."""
    if 1000 <= code <= 4999:
        return code
    return 1008


def frame(event: str, data: Any = None) -> dict[str, Any]:
    """Build a socket frame."""
    return {"event": event, "data": data}


class Subscriber:
    """
    One connected socket plus its outbound queue and writer task.

    Subscribers are hashable by identity so they can live in room sets.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        user_id: Optional[int] = None,
        role: Optional[str] = None,
        queue_size: int = MAX_PENDING_EVENTS,
    ):
        self.id = next(_subscriber_ids)
        self.websocket = websocket
        self.user_id = user_id
        self.role = role
        self.rooms: set[int] = set()
        self.closed = False
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Subscriber {self.id} user={self.user_id} role={self.role}>"

    def start(self) -> None:
        """Start the writer task; idempotent."""
        if self._writer is None and not self.closed:
            self._writer = asyncio.create_task(self._run_writer())

    def offer(self, payload: dict[str, Any]) -> bool:
        """Enqueue without waiting. Returns False if closed or the queue is full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the socket."""
        if self.closed or self._writer is None:
            return
        await self._queue.join()

    async def _send(self, payload: dict[str, Any]) -> bool:
        """Send JSON with timeout. Returns False on timeout; raises if the socket is gone."""
        if self.websocket.client_state != WebSocketState.CONNECTED:
            raise RuntimeError("socket is not connected")
        try:
            await asyncio.wait_for(self.websocket.send_text(json.dumps(payload)), timeout=SEND_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            return False

    def _discard_pending(self) -> None:
        """Settle frames that will never be sent so `flush` waiters are released."""
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    async def _run_writer(self) -> None:
        timeouts = 0
        try:
            while True:
                payload = await self._queue.get()
                try:
                    ok = await self._send(payload)
                except (RuntimeError, OSError, WebSocketDisconnect):
                    self.closed = True
                    return
                finally:
                    self._queue.task_done()
                if ok:
                    timeouts = 0
                    continue
                timeouts += 1
                if timeouts >= MAX_CONSECUTIVE_SEND_TIMEOUTS:
                    logger.warning("Dropping %r after %d consecutive send timeouts", self, timeouts)
                    await self.close(code=1008, reason="Subscriber too slow.")
                    return
        finally:
            self._discard_pending()

    def stop(self) -> None:
        """Refuse further frames, cancel the writer and drop anything still queued."""
        self.closed = True
        writer, self._writer = self._writer, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        self._discard_pending()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Stop the writer and close the socket if still open."""
        self.stop()
        if self.websocket.client_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close(code=_close_code(code), reason=reason)
            except RuntimeError:
                pass


class BusRoom:
    """Members subscribed to one bus, guarded by a per-room lock."""

    def __init__(self, bus_id: int):
        self.bus_id = bus_id
        self.members: set[Subscriber] = set()
        self.lock = asyncio.Lock()


class BusRoomBroker:
    """
    Maps bus_id -> BusRoom.

    The registry lock only guards creating and dropping rooms; membership changes
    and publishes for a bus take that bus's room lock, so unrelated buses never
    contend. Lock order is always registry, then room.
    """

    def __init__(self):
        self._rooms: dict[int, BusRoom] = {}
        self._lock = asyncio.Lock()

    def members(self, bus_id: int) -> frozenset[Subscriber]:
        """Snapshot of a room's members."""
        room = self._rooms.get(bus_id)
        return frozenset(room.members) if room else frozenset()

    def room_ids(self) -> list[int]:
        return sorted(self._rooms)

    # PUBLIC_INTERFACE
    async def join(self, subscriber: Subscriber, bus_id: int) -> None:
        """Add subscriber to the bus room. Joining twice is the same as joining once."""
        async with self._lock:
            room = self._rooms.get(bus_id)
            if room is None:
                room = BusRoom(bus_id)
                self._rooms[bus_id] = room
            async with room.lock:
                room.members.add(subscriber)
                subscriber.rooms.add(bus_id)
        logger.info("%r joined bus-%s", subscriber, bus_id)

    # PUBLIC_INTERFACE
    async def leave(self, subscriber: Subscriber, bus_id: int) -> None:
        """Remove subscriber from the bus room; a no-op if it was not a member."""
        async with self._lock:
            room = self._rooms.get(bus_id)
            if room is None:
                subscriber.rooms.discard(bus_id)
                return
            async with room.lock:
                room.members.discard(subscriber)
                subscriber.rooms.discard(bus_id)
                if not room.members:
                    self._rooms.pop(bus_id, None)
        logger.info("%r left bus-%s", subscriber, bus_id)

    # PUBLIC_INTERFACE
    async def disconnect(self, subscriber: Subscriber) -> None:
        """Remove subscriber from every room it belongs to."""
        for bus_id in list(subscriber.rooms):
            await self.leave(subscriber, bus_id)

    # PUBLIC_INTERFACE
    async def publish(self, bus_id: int, payload: dict[str, Any]) -> int:
        """
        Deliver payload to every current member of the bus room.

        Returns the number of members it was queued for. Members whose queue is
        full are evicted and closed after the room lock is released.
        """
        room = self._rooms.get(bus_id)
        if room is None:
            return 0

        stale: list[Subscriber] = []
        delivered = 0
        async with room.lock:
            for subscriber in room.members:
                if subscriber.offer(payload):
                    delivered += 1
                else:
                    stale.append(subscriber)

        for subscriber in stale:
            logger.warning("Evicting %r from bus-%s: outbound queue full or closed", subscriber, bus_id)
            await self.disconnect(subscriber)
            await subscriber.close(code=1008, reason="Subscriber too slow.")
        return delivered

    async def close(self) -> None:
        """Close every subscriber and clear all rooms."""
        async with self._lock:
            rooms, self._rooms = self._rooms, {}
        subscribers = {s for room in rooms.values() for s in room.members}
        for subscriber in subscribers:
            subscriber.rooms.clear()
            await subscriber.close(code=1001, reason="Server shutting down.")


# PUBLIC_INTERFACE
async def publish_location(broker: BusRoomBroker, event: LocationEvent) -> int:
    """
    Publish a location-update event to its bus room.

    Failures are contained here: a broken room must never fail the request that
    already persisted the report.
    """
    payload = frame(LOCATION_EVENT, event.model_dump(mode="json", by_alias=True))
    try:
        return await broker.publish(event.bus_id, payload)
    except Exception:
        logger.exception("Failed to publish location for bus %s", event.bus_id)
        return 0


def _extract_token_from_ws(websocket: WebSocket) -> Optional[str]:
    """
    Extract JWT from:
    - Authorization: Bearer <token>
    - ?token=<token> query
    """
    auth = websocket.headers.get("authorization")
    if auth:
        parts = auth.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip()

    token = websocket.query_params.get("token")
    if token:
        return token.strip()
    return None


# PUBLIC_INTERFACE
def authenticate_ws_user(websocket: WebSocket, db: Session) -> User:
    """
    Authenticate a WebSocket connection using the same JWT logic as HTTP.

    Raises:
        Unauthenticated: on missing/invalid token or unknown user.
    """
    token = _extract_token_from_ws(websocket)
    if not token:
        raise Unauthenticated("Missing authentication token (use Authorization: Bearer ... or ?token=...).")

    try:
        payload = decode_token(token)
    except jwt.PyJWTError:
        raise Unauthenticated("Invalid or expired token.")

    try:
        user_id = int(str(payload.get("sub")))
    except (TypeError, ValueError):
        raise Unauthenticated("Invalid token.")

    user = db.get(User, user_id)
    if not user:
        raise Unauthenticated("Invalid or expired token.")
    return user


def _parse_bus_id(data: Any) -> Optional[int]:
    """Room events carry the bus id bare or as {"busId": n}."""
    if isinstance(data, dict):
        data = data.get("busId", data.get("bus_id"))
    if isinstance(data, bool):
        return None
    if isinstance(data, int):
        return data
    if isinstance(data, str) and data.strip().isdigit():
        return int(data.strip())
    return None


async def _heartbeat_sender(subscriber: Subscriber, stop_event: asyncio.Event) -> None:
    """Queue periodic ping frames until stop_event is set."""
    while not stop_event.is_set():
        await asyncio.sleep(PING_INTERVAL_SECONDS)
        if stop_event.is_set():
            break
        # App-level ping since browser WS doesn't expose ping frames.
        if not subscriber.offer(frame("ping", {"ts": time.time()})):
            stop_event.set()


async def _handle_message(
    msg: Any,
    *,
    subscriber: Subscriber,
    user: User,
    broker: BusRoomBroker,
    db: Session,
) -> None:
    """Dispatch one client frame. Errors are reported to the client, not raised."""
    if not isinstance(msg, dict):
        subscriber.offer(frame("error", {"message": "Expected a JSON object with an 'event' field."}))
        return

    event = msg.get("event")
    data = msg.get("data")

    if event == "pong":
        return

    if event in (JOIN_EVENT, LEAVE_EVENT):
        bus_id = _parse_bus_id(data)
        if bus_id is None:
            subscriber.offer(frame("error", {"event": event, "message": "busId must be an integer.", "status": 400}))
            return
        if event == LEAVE_EVENT:
            await broker.leave(subscriber, bus_id)
            subscriber.offer(frame("left", {"busId": bus_id}))
            return
        try:
            await call_store(ensure_can_observe, db, user, bus_id)
        except TrackingError as e:
            subscriber.offer(
                frame("error", {"event": event, "busId": bus_id, "message": e.detail, "status": e.status_code})
            )
            return
        await broker.join(subscriber, bus_id)
        subscriber.offer(frame("joined", {"busId": bus_id}))
        return

    if event == LOCATION_EVENT:
        await _handle_client_hint(data, subscriber=subscriber, user=user, broker=broker, db=db)
        return

    subscriber.offer(frame("error", {"event": event, "message": "Unknown event."}))


async def _handle_client_hint(
    data: Any,
    *,
    subscriber: Subscriber,
    user: User,
    broker: BusRoomBroker,
    db: Session,
) -> None:
    """
    Forward a client-originated location as an unverified hint.

    Nothing is persisted; the forwarded event is tagged source="client". The
    sender must still be the bus's assigned driver.
    """
    if not ALLOW_CLIENT_LOCATION_HINTS:
        subscriber.offer(
            frame(
                "error",
                {
                    "event": LOCATION_EVENT,
                    "message": "Client location updates are disabled; POST /gps instead.",
                    "status": 403,
                },
            )
        )
        return
    try:
        hint = LocationEvent.model_validate(data if isinstance(data, dict) else {})
    except PydanticValidationError as e:
        subscriber.offer(
            frame(
                "error",
                {
                    "event": LOCATION_EVENT,
                    "message": "Invalid location payload.",
                    "errors": summarize_validation_errors(e.errors()),
                    "status": 400,
                },
            )
        )
        return
    try:
        await call_store(ensure_can_ingest, db, user, hint.bus_id)
    except TrackingError as e:
        subscriber.offer(frame("error", {"event": LOCATION_EVENT, "message": e.detail, "status": e.status_code}))
        return
    # Client clocks are not trusted; hints carry the time the server relayed them.
    hint = hint.model_copy(update={"source": "client", "timestamp": datetime.now(timezone.utc)})
    await publish_location(broker, hint)


# PUBLIC_INTERFACE
async def run_ws_session(websocket: WebSocket, *, db: Session, broker: BusRoomBroker) -> None:
    """
    WebSocket session runner with:
    - auth
    - authorization-gated room join/leave
    - heartbeat pings
    - removal from every room on disconnect, however the socket ends
    """
    # Accept early so client gets WS upgrade; on auth failure we close with 1008.
    await websocket.accept()

    try:
        user = await call_store(authenticate_ws_user, websocket, db)
    except TrackingError as e:
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.send_json(frame("error", {"message": e.detail, "status": e.status_code}))
            await websocket.close(code=_close_code(1008), reason=str(e.detail))
        return

    subscriber = Subscriber(websocket, user_id=user.id, role=role_of(user))
    subscriber.start()
    subscriber.offer(frame("connected", {"userId": user.id, "role": subscriber.role}))
    logger.info("%r connected", subscriber)

    stop = asyncio.Event()
    heartbeat_task = asyncio.create_task(_heartbeat_sender(subscriber, stop))

    try:
        while websocket.client_state == WebSocketState.CONNECTED and not stop.is_set() and not subscriber.closed:
            try:
                msg = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, KeyError):
                # Invalid JSON or a non-text frame.
                subscriber.offer(frame("error", {"message": "Invalid message format; expected JSON."}))
                continue
            await _handle_message(msg, subscriber=subscriber, user=user, broker=broker, db=db)
    except RuntimeError:
        # Socket closed underneath us (e.g. evicted as a slow subscriber).
        pass
    except Exception:
        logger.exception("Unexpected error in socket session for %r", subscriber)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=_close_code(1011), reason="Internal server error")
    finally:
        stop.set()
        heartbeat_task.cancel()
        subscriber.stop()
        await broker.disconnect(subscriber)
        logger.info("%r disconnected", subscriber)
