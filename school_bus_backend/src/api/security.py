"""
Password hashing and access tokens for admins, drivers and parents.

One bearer token authenticates a user on both the HTTP API and the /ws socket.
Tokens are HS256 JWTs carrying the user id and role; they are valid for seven
days by default. The role in the token is informational: authorization always
re-reads the user row, so a reassigned driver or removed child takes effect
immediately.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Claims every token must carry; anything else is rejected at decode time.
REQUIRED_CLAIMS = ["sub", "role", "iat", "exp"]

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
if not JWT_SECRET_KEY:
    raise RuntimeError(
        "Missing required environment variable: JWT_SECRET_KEY. "
        "Tokens for the tracking API cannot be signed without it."
    )
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60)))


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Check a login attempt against the stored bcrypt hash."""
    return pwd_context.verify(password, password_hash)


# PUBLIC_INTERFACE
def create_access_token(*, subject: int, role: str, expires_minutes: Optional[int] = None) -> str:
    """
    Issue a token for a tracking user.

    Claims:
    - sub: the users.id primary key, as a string
    - role: admin | driver | parent at the time of login
    - iat / exp: issue and expiry instants (UTC epoch seconds)

    `expires_minutes` overrides ACCESS_TOKEN_EXPIRE_MINUTES; a negative value
    yields an already expired token.
    """
    lifetime = ACCESS_TOKEN_EXPIRE_MINUTES if expires_minutes is None else expires_minutes
    issued = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": str(subject),
        "role": role,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=lifetime)).timestamp()),
    }
    return jwt.encode(claims, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


# PUBLIC_INTERFACE
def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify signature, expiry and the presence of REQUIRED_CLAIMS.

    Raises:
        jwt.PyJWTError: on any invalid, expired or incomplete token.
    """
    return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM], options={"require": REQUIRED_CLAIMS})
