"""
Error taxonomy shared by the location store, the authorization resolver and the
HTTP/WebSocket layers.

Components raise these; `src.api.main` renders them as `{"detail": ...}` with the
mapped status code.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import status


class TrackingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Internal server error."

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(TrackingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Validation error."


class Unauthenticated(TrackingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Missing authentication token."

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"WWW-Authenticate": "Bearer"}


class Forbidden(TrackingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Access denied."


class NotFound(TrackingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."


class Conflict(TrackingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict."


class StoreUnavailable(TrackingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Location store unavailable."


def summarize_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Reduce pydantic error dicts to JSON-safe loc/msg/type triples."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in errors
    ]
