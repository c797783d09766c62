# tests/conftest.py
"""
Shared fixtures: an in-memory SQLite database seeded with a small fleet, and
tokens minted with the real token issuer.
"""

from __future__ import annotations

import asyncio
import json
import os
from types import SimpleNamespace
from typing import Any, Dict, Generator

import pytest

# Environment must be in place before application modules are imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["AUTO_CREATE_TABLES"] = "true"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from starlette.websockets import WebSocketState  # noqa: E402

from src.api.db import SessionLocal, engine, init_db  # noqa: E402
from src.api.main import app  # noqa: E402
from src.api.models.base import Base  # noqa: E402
from src.api.models.bus import Bus  # noqa: E402
from src.api.models.student import Student  # noqa: E402
from src.api.models.user import User, UserRole  # noqa: E402
from src.api.security import create_access_token  # noqa: E402


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Fresh schema per test."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fleet(db: Session) -> SimpleNamespace:
    """
    Users and buses:

    - driver (bus 3), other_driver (bus 5), idle_driver (no bus)
    - parent: children on buses 3 and 5
    - other_parent: child on bus 7 only
    - bus 8 has nobody attached
    """
    users = {
        "admin": User(id=1, name="Admin", email="admin@example.com", password_hash="x", role=UserRole.admin),
        "driver": User(id=2, name="Dan Driver", email="dan@example.com", password_hash="x", role=UserRole.driver),
        "other_driver": User(
            id=3, name="Olive Driver", email="olive@example.com", password_hash="x", role=UserRole.driver
        ),
        "idle_driver": User(id=4, name="Ivan Idle", email="ivan@example.com", password_hash="x", role=UserRole.driver),
        "parent": User(id=5, name="Pat Parent", email="pat@example.com", password_hash="x", role=UserRole.parent),
        "other_parent": User(
            id=6, name="Quinn Parent", email="quinn@example.com", password_hash="x", role=UserRole.parent
        ),
    }
    db.add_all(users.values())
    db.flush()

    buses = {
        3: Bus(id=3, number_plate="KBA 003A", capacity=40, driver_id=2),
        5: Bus(id=5, number_plate="KBA 005A", capacity=33, driver_id=3),
        7: Bus(id=7, number_plate="KBA 007A", capacity=52),
        8: Bus(id=8, number_plate="KBA 008A", capacity=14),
    }
    db.add_all(buses.values())
    db.flush()

    db.add_all(
        [
            Student(name="Amy", grade="4", parent_id=5, bus_id=3),
            Student(name="Ben", grade="6", parent_id=5, bus_id=5),
            Student(name="Cal", grade="2", parent_id=6, bus_id=7),
            Student(name="Dee", grade="1", parent_id=6, bus_id=None),
        ]
    )
    db.commit()
    return SimpleNamespace(buses=buses, **users)


def token_for(user: User) -> str:
    return create_access_token(subject=user.id, role=user.role.value)


def auth(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def client(fleet) -> Generator[TestClient, None, None]:
    """TestClient with lifespan, so the room broker exists."""
    with TestClient(app) as c:
        yield c


class FakeWebSocket:
    """
    Stand-in for a Starlette WebSocket.

    Outbound frames are decoded into `sent`; inbound frames come from `incoming`.
    A blocked socket never completes a send.
    """

    def __init__(self, *, blocked: bool = False, token: str | None = None):
        self.client_state = WebSocketState.CONNECTED
        self.sent: list[Any] = []
        self.blocked = blocked
        self.close_code: int | None = None
        self.headers: Dict[str, str] = {}
        self.query_params: Dict[str, str] = {"token": token} if token else {}
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def accept(self) -> None:
        return None

    async def send_text(self, text: str) -> None:
        if self.blocked:
            await asyncio.Event().wait()
        self.sent.append(json.loads(text))

    async def send_json(self, data: Any) -> None:
        self.sent.append(data)

    async def receive_json(self) -> Any:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            self.client_state = WebSocketState.DISCONNECTED
            raise item
        return item

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_code = code
        self.client_state = WebSocketState.DISCONNECTED

    def events(self, name: str) -> list[Any]:
        return [f["data"] for f in self.sent if f.get("event") == name]
