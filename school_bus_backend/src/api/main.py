"""
FastAPI application entrypoint for the School Bus Tracking Backend.

Provides:
- Health check
- Authentication (/auth/*) and current user profile (/users/me)
- Bus listing and tracking toggle (/bus)
- Location ingestion and queries (/gps)
- Live location rooms over WebSocket (/ws)

Configuration:
- DATABASE_URL: Postgres connection string
- JWT_SECRET_KEY: secret used to sign access tokens
- JWT_ALGORITHM: optional (default HS256)
- ACCESS_TOKEN_EXPIRE_MINUTES: optional (default 10080, seven days)
- CORS_ORIGIN: optional, comma separated (default http://localhost:3001)
- LOG_LEVEL: optional (default INFO)
- AUTO_CREATE_TABLES: optional (default true)
- STORE_TIMEOUT_SECONDS: optional (default 5); bounds HTTP reads and Postgres statements
- ALLOW_CLIENT_LOCATION_HINTS: optional (default false)
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.db import AUTO_CREATE_TABLES, init_db
from src.api.errors import TrackingError, summarize_validation_errors
from src.api.realtime import BusRoomBroker
from src.api.routers import auth as auth_router
from src.api.routers import buses as buses_router
from src.api.routers import gps as gps_router
from src.api.routers import users as users_router
from src.api.routers import ws as ws_router

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGIN", "http://localhost:3001").split(",") if o.strip()]

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Health and readiness endpoints."},
    {"name": "auth", "description": "Registration and login endpoints."},
    {"name": "users", "description": "User profile endpoints."},
    {"name": "buses", "description": "Bus visibility and tracking toggle endpoints."},
    {"name": "gps", "description": "Location ingestion, latest location and history endpoints."},
    {
        "name": "realtime",
        "description": "WebSocket endpoint for live bus locations (see /docs/ws).",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the room broker on startup; close every room on shutdown."""
    if AUTO_CREATE_TABLES:
        init_db()
    app.state.broker = BusRoomBroker()
    logger.info("Room broker ready")

    yield

    await app.state.broker.close()
    logger.info("Room broker closed")


app = FastAPI(
    title="School Bus Tracking Backend",
    description="Backend API for live school bus tracking (admins, drivers & parents).",
    version="0.1.0",
    openapi_tags=openapi_tags,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError) -> JSONResponse:
    """Render domain errors as {"detail": ...} with their mapped status."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed requests are reported as 400, like every other validation failure."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Validation error", "errors": summarize_validation_errors(exc.errors())},
    )


app.include_router(auth_router.router)
app.include_router(users_router.router)
app.include_router(buses_router.router)
app.include_router(gps_router.router)
app.include_router(ws_router.router)


@app.get(
    "/",
    tags=["health"],
    summary="Health check",
    description="Simple health check endpoint.",
    operation_id="health_check",
)
def health_check():
    """Return a simple health response."""
    return {"message": "Healthy"}


@app.get(
    "/docs/ws",
    tags=["realtime"],
    summary="WebSocket usage guide",
    description="Human-readable documentation for the WebSocket endpoint (OpenAPI does not fully model WebSockets).",
    operation_id="docs_websocket_usage",
)
def websocket_usage_guide():
    """
    WebSocket usage guide.

    Authentication:
    - Provide JWT via header: Authorization: Bearer <token>
      OR via query: ?token=<token>

    Endpoint:
    - ws /ws
      * Send {"event":"join-bus-room","data":<busId>} to subscribe; the join is
        checked with the same rules as GET /gps/{busId}.
      * Send {"event":"leave-bus-room","data":<busId>} to unsubscribe.
        Disconnecting leaves every room.
      * Receive location-update for each report accepted by POST /gps.

    Notes:
    - Heartbeats are JSON "ping" frames every ~20 seconds.
    - Clients may respond with {"event":"pong"}.
    - Client-sent location-update frames are rejected unless the server enables
      hints; forwarded hints carry "source":"client", the server relay time, and
      are not stored. Hints for a bus with tracking disabled are refused.
    """
    return {
        "auth": {
            "header": "Authorization: Bearer <JWT>",
            "query": "?token=<JWT>",
        },
        "endpoint": "/ws",
        "messages": {
            "client_send": ["join-bus-room", "leave-bus-room", "pong", "location-update"],
            "join_example": {"event": "join-bus-room", "data": 3},
            "server_events": ["connected", "joined", "left", "location-update", "ping", "error"],
            "location_update_example": {
                "event": "location-update",
                "data": {
                    "busId": 3,
                    "latitude": -0.30,
                    "longitude": 36.08,
                    "speed": 40.0,
                    "timestamp": "2026-01-01T07:30:00Z",
                    "source": "server",
                },
            },
        },
    }
