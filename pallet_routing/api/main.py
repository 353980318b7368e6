from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pallet_routing.core.errors import Conflict, InvariantViolation, NotFound, RoutingError, ValidationError
from pallet_routing.core.logging import configure_logging, correlation_id_var
from pallet_routing.core.settings import get_app_settings
from pallet_routing.db.run_migrations import upgrade_head
from pallet_routing.db.seed import seed_all
from pallet_routing.schemas.common import ErrorInfo, ErrorResponse, MessageResponse
from pallet_routing.schemas.realtime import WsEnvelope
from pallet_routing.services.realtime import SUPERVISOR_TOPIC, broadcast_manager

# Routers
from pallet_routing.api.routes.operations import self_service_router, shift_router
from pallet_routing.api.routes.production import router as production_router

settings = get_app_settings()

# Configure structured logging once at import
configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Liveness and readiness probes."},
    {"name": "Shift Stations", "description": "Supervisor-assigned station operations."},
    {"name": "Self-Service Stations", "description": "Operations for stations that pick their own work."},
    {"name": "Production", "description": "Pallet creation, returns and routing read models."},
    {"name": "WebSocket", "description": "Routing event subscriptions."},
]

app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    openapi_tags=openapi_tags,
)

# CORS - avoid wildcard with credentials
cors_allow_credentials = settings.CORS_ALLOW_CREDENTIALS
if settings.CORS_ORIGINS == ["*"] and cors_allow_credentials:
    logger.warning("CORS_ALLOW_CREDENTIALS=True with '*' origins is not permitted; disabling credentials.")
    cors_allow_credentials = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=cors_allow_credentials,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """
    Enrich request context with a correlation_id for logging and error responses.
    Adds 'X-Correlation-ID' to every response.
    """
    corr = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID") or str(uuid4())
    token_corr = correlation_id_var.set(corr)
    request.state.correlation_id = corr

    logger.info("Incoming request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
    finally:
        correlation_id_var.reset(token_corr)

    response.headers["X-Correlation-ID"] = corr
    return response


def _build_error_response(
    request: Request,
    status_code: int,
    error_type: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    """Build a standardized ErrorResponse JSONResponse."""
    err = ErrorResponse(
        status=status_code,
        error=ErrorInfo(type=error_type, message=message, details=details),
        correlation_id=getattr(request.state, "correlation_id", None),
        path=request.url.path,
        method=request.method,
        timestamp=datetime.now(tz=timezone.utc),
    )
    return JSONResponse(status_code=status_code, content=err.model_dump(mode="json"))


# PUBLIC_INTERFACE
def status_for(exc: RoutingError) -> int:
    """HTTP status for a routing error family."""
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, Conflict):
        return 409
    if isinstance(exc, InvariantViolation):
        return 422
    if isinstance(exc, ValidationError):
        return 400
    return 400


@app.exception_handler(RoutingError)
async def routing_exception_handler(request: Request, exc: RoutingError):
    """
    Translate routing errors into the error envelope; ``error.type`` carries the violated rule.
    """
    code = status_for(exc)
    logger.info("Routing operation rejected (%s): %s", exc.rule, exc.message)
    return _build_error_response(
        request=request,
        status_code=code,
        error_type=exc.rule,
        message=exc.message,
        details=exc.details or None,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Global handler for HTTPException to produce a standardized error envelope.
    """
    detail = exc.detail if isinstance(exc.detail, str) else "HTTP Error"
    return _build_error_response(
        request=request,
        status_code=exc.status_code,
        error_type="http_error",
        message=str(detail),
        details=None if isinstance(exc.detail, str) else exc.detail,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Global handler for request validation errors with a standard structure.
    """
    return _build_error_response(
        request=request,
        status_code=422,
        error_type="request_validation_error",
        message="Request validation failed",
        details=[{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()],
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Catch-all handler to avoid leaking stack traces and to return a structured error.
    """
    logger.exception("Unhandled error processing request")
    return _build_error_response(
        request=request,
        status_code=500,
        error_type="internal_error",
        message="An unexpected error occurred",
        details=None,
    )


@app.on_event("startup")
async def on_startup() -> None:
    """
    Run migrations and optional seeding on service startup.

    Seeding is opt-in via settings.
    """
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        try:
            logger.info("Running Alembic migrations: upgrade head")
            # Alembic's env drives its own event loop; keep it off the server loop.
            await asyncio.to_thread(upgrade_head)
            logger.info("Migrations completed.")
        except Exception as exc:
            logger.exception("Migration step failed: %s", exc)

    if settings.AUTO_SEED:
        try:
            logger.info("Running database seeding...")
            await seed_all()
            logger.info("Seeding completed.")
        except Exception as exc:
            logger.exception("Seeding step failed: %s", exc)


# Build API v1 router and include sub-routers
api_v1 = APIRouter(prefix="/api/v1")


# PUBLIC_INTERFACE
@api_v1.get(
    "/health",
    response_model=MessageResponse,
    summary="Health Check",
    tags=["Health"],
)
def health_check() -> MessageResponse:
    """
    Basic liveness health check endpoint.

    Returns:
        MessageResponse: Simple confirmation that the service is running.
    """
    return MessageResponse(message="Healthy")


# PUBLIC_INTERFACE
@api_v1.get(
    "/websocket-info",
    response_model=Dict[str, Any],
    summary="WebSocket Usage Information",
    tags=["WebSocket"],
)
def websocket_info() -> Dict[str, Any]:
    """
    Describe how to subscribe to routing events.

    Returns:
        JSON object with the endpoint, topic names and message format.
    """
    return {
        "path": "/ws/routing",
        "query": ["topic?"],
        "topics": [
            "routing:supervisor",
            "routing:machine:<machine_id>",
            "routing:cell:<cell_id>",
            "routing:part:<part_id>",
            "routing:packaging",
        ],
        "message_format": "{ type: string, payload: object, at: ISO-8601, channel: string }",
        "notes": "Events are pushed after the producing operation commits; send 'ping' to keep the connection alive.",
    }


api_v1.include_router(shift_router)
api_v1.include_router(self_service_router)
api_v1.include_router(production_router)

# Attach api_v1 to app
app.include_router(api_v1)


# PUBLIC_INTERFACE
@app.websocket("/ws/routing")
async def ws_routing(websocket: WebSocket):
    """
    WebSocket endpoint for routing events.

    Query Parameters:
      - topic: routing topic to subscribe to (default routing:supervisor)

    Messages:
      - Server -> Client: WsEnvelope for each event delivered on the topic
      - Client -> Server: 'ping' keepalive; other messages ignored.
    """
    await websocket.accept()
    topic = websocket.query_params.get("topic") or SUPERVISOR_TOPIC
    if not topic.startswith("routing:"):
        await websocket.close(code=4400)
        return

    await broadcast_manager.connect(topic, websocket)
    await websocket.send_json(WsEnvelope(type="subscribed", payload={"topic": topic}, channel=topic).model_dump(mode="json"))

    try:
        while True:
            msg = await websocket.receive_text()
            if msg and msg.lower() == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        await broadcast_manager.disconnect(topic, websocket)
    except Exception:
        logger.exception("Error on ws_routing connection")
        await broadcast_manager.disconnect(topic, websocket)
        await websocket.close()
