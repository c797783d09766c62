import logging
from typing import Optional

import jwt
from fastapi import APIRouter, Depends, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.deps import bearer_scheme
from src.api.errors import Conflict, Forbidden, Unauthenticated
from src.api.models.user import User, UserRole
from src.api.schemas.auth import LoginRequest, RegisterRequest, TokenResponse
from src.api.security import create_access_token, decode_token, hash_password, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _ensure_admin_caller(db: Session, credentials: Optional[HTTPAuthorizationCredentials]) -> None:
    """Only an authenticated admin may create another admin account."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Forbidden("Admin registration requires authentication")
    try:
        payload = decode_token(credentials.credentials)
        caller = db.get(User, int(str(payload.get("sub"))))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise Forbidden("Invalid or expired token")
    if caller is None or caller.role != UserRole.admin:
        raise Forbidden("Only admins can create admin accounts")


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
    description="Create a new user account (parent or driver; admin requires an admin token) and return an access token.",
    operation_id="auth_register",
)
def register(
    payload: RegisterRequest,
    db: Session = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TokenResponse:
    """
    Register a new user and return a JWT access token.

    Errors:
    - 403 if registering an admin without an admin token
    - 409 if email already exists
    """
    role = UserRole(payload.role)
    if role == UserRole.admin:
        _ensure_admin_caller(db, credentials)

    user = User(
        name=payload.name.strip(),
        email=str(payload.email).lower().strip(),
        password_hash=hash_password(payload.password),
        role=role,
    )

    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("An account with this email already exists.")
    db.refresh(user)
    logger.info("Registered %s user %s", role.value, user.id)

    token = create_access_token(subject=user.id, role=user.role.value)
    return TokenResponse(access_token=token)


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login",
    description="Authenticate a user by email/password and return an access token.",
    operation_id="auth_login",
)
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    """
    Login by verifying user credentials and return a JWT access token.

    Errors:
    - 401 for invalid credentials
    """
    email = str(payload.email).lower().strip()
    user = db.scalar(select(User).where(User.email == email))
    if not user or not verify_password(payload.password, user.password_hash):
        raise Unauthenticated("Invalid email or password.")

    token = create_access_token(subject=user.id, role=user.role.value)
    return TokenResponse(access_token=token)
