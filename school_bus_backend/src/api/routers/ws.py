"""
WebSocket route for live bus tracking.

Endpoint:
- /ws : one socket per client; rooms are joined and left with socket events

Auth:
- Provide JWT via `Authorization: Bearer <token>` OR query param `?token=<token>`.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, WebSocket
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.realtime import run_ws_session

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def ws_bus_tracking(websocket: WebSocket, db: Session = Depends(get_db)) -> None:
    """
    Bus tracking WebSocket.

    Client frames (JSON):
    - {"event":"join-bus-room","data":<busId>}
    - {"event":"leave-bus-room","data":<busId>}
    - {"event":"location-update","data":{...}}  (only when client hints are enabled)
    - {"event":"pong"}

    Server frames (JSON):
    - {"event":"connected", ...}, {"event":"joined", ...}, {"event":"left", ...}
    - {"event":"location-update","data":{"busId":..,"latitude":..,"longitude":..,"speed":..,"timestamp":..}}
    - {"event":"ping", ...} heartbeat, {"event":"error", ...}
    """
    await run_ws_session(websocket, db=db, broker=websocket.app.state.broker)
