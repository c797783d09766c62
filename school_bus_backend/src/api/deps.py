"""
Shared FastAPI dependencies for authentication/authorization.

This module centralizes JWT parsing and role checks so routers can enforce
consistent access controls.
"""

from __future__ import annotations

from typing import Any, Callable, Dict

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from src.api.access import role_of
from src.api.db import get_db
from src.api.errors import Forbidden, Unauthenticated
from src.api.models.user import User, UserRole
from src.api.realtime import BusRoomBroker
from src.api.security import decode_token

bearer_scheme = HTTPBearer(auto_error=False)


# PUBLIC_INTERFACE
def get_current_token_payload(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Dict[str, Any]:
    """
    Return decoded JWT payload for the current request.

    Authentication: Bearer JWT access token.

    Raises:
        Unauthenticated: if token missing/invalid/expired.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Missing authentication token.")
    try:
        payload = decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise Unauthenticated("Invalid or expired token.")

    if not payload.get("sub"):
        raise Unauthenticated("Invalid token.")
    return payload


# PUBLIC_INTERFACE
def get_current_user_id(payload: Dict[str, Any] = Depends(get_current_token_payload)) -> int:
    """
    Return current authenticated user's id.

    Raises:
        Unauthenticated: if sub is not an integer id.
    """
    try:
        return int(str(payload.get("sub")))
    except (TypeError, ValueError):
        raise Unauthenticated("Invalid token.")


# PUBLIC_INTERFACE
def get_current_user(db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)) -> User:
    """
    Return the current authenticated User ORM object.

    Raises:
        Unauthenticated: if token valid but user missing.
    """
    user = db.get(User, user_id)
    if not user:
        raise Unauthenticated("Invalid or expired token.")
    return user


# PUBLIC_INTERFACE
def require_role(*roles: UserRole) -> Callable[..., User]:
    """Build a dependency that admits only users holding one of `roles`."""
    allowed = {r.value for r in roles}

    def _dependency(current_user: User = Depends(get_current_user)) -> User:
        if role_of(current_user) not in allowed:
            raise Forbidden("Insufficient permissions")
        return current_user

    return _dependency


require_admin = require_role(UserRole.admin)


# PUBLIC_INTERFACE
def get_broker(request: Request) -> BusRoomBroker:
    """Return the room broker created by the application lifespan."""
    return request.app.state.broker
