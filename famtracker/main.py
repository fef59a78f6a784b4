"""
FamTracker HTTP and WebSocket API.

``create_app`` builds the FastAPI application around a ServiceContainer.
Identity is supplied by the trusted gateway in the ``X-User-ID`` header.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from famtracker.config.settings import Settings, get_settings, validate_startup
from famtracker.container import ServiceContainer
from famtracker.errors.exceptions import AppException, AuthorizationError, unauthorized
from famtracker.errors.handlers import register_exception_handlers
from famtracker.middleware.rate_limiter import api_rate_limit, location_rate_limit, setup_rate_limiting
from famtracker.middleware.request_id import RequestIDMiddleware
from famtracker.models import (
    EnrichedReport,
    FamilyPositions,
    HistoryPage,
    Membership,
    StatsResponse,
    VisibilityUpdate,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "FamTracker API"
SERVICE_VERSION = "1.0.0"
USER_ID_HEADER = "X-User-ID"

# Policy violation: missing identity or not a member of the group
WS_POLICY_VIOLATION = 1008
WS_TRY_AGAIN_LATER = 1013


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def current_user(x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER)) -> str:
    """The authenticated user id, or 401 when the gateway did not set one."""
    if x_user_id is None or not x_user_id.strip():
        raise unauthorized()
    return x_user_id.strip()


# =============================================================================
# Location endpoints
# =============================================================================

router = APIRouter(prefix="/api/v1")


@router.post("/location", response_model=EnrichedReport, status_code=201)
@location_rate_limit()
async def submit_location(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(current_user),
    container: ServiceContainer = Depends(get_container),
):
    """Store one position report and return it enriched with the matched road."""
    return await container.ingestion.submit_position(user_id, payload)


@router.get("/location/family/{group_id}", response_model=FamilyPositions)
@api_rate_limit()
async def family_locations(
    request: Request,
    group_id: str,
    user_id: str = Depends(current_user),
    container: ServiceContainer = Depends(get_container),
):
    return await container.locations.current_positions(user_id, group_id)


@router.get("/location/history/{subject_id}", response_model=HistoryPage)
@api_rate_limit()
async def location_history(
    request: Request,
    subject_id: str,
    start_time: Optional[datetime] = Query(None),
    end_time: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None),
    user_id: str = Depends(current_user),
    container: ServiceContainer = Depends(get_container),
):
    """
    Position history of ``subject_id``, newest first.

    ``limit`` defaults to 100 and must lie in 1..1000.
    """
    return await container.locations.history(
        user_id, subject_id, start_time=start_time, end_time=end_time, limit=limit
    )


@router.get("/location/stats/{subject_id}", response_model=StatsResponse)
@api_rate_limit()
async def location_stats(
    request: Request,
    subject_id: str,
    user_id: str = Depends(current_user),
    container: ServiceContainer = Depends(get_container),
):
    return await container.statistics.stats(user_id, subject_id)


# =============================================================================
# Family endpoints
# =============================================================================


@router.patch("/family/{group_id}/visibility", response_model=Membership)
@api_rate_limit()
async def update_visibility(
    request: Request,
    group_id: str,
    update: VisibilityUpdate,
    user_id: str = Depends(current_user),
    container: ServiceContainer = Depends(get_container),
):
    """Show or hide the caller on the group's live map."""
    return await container.membership.set_visibility(user_id, group_id, update.is_visible)


@router.get("/family/list")
@api_rate_limit()
async def list_families(
    request: Request,
    user_id: str = Depends(current_user),
    container: ServiceContainer = Depends(get_container),
):
    groups = await container.membership.list_groups(user_id)
    return {"user_id": user_id, "groups": groups}


@router.get("/family/{group_id}/members", response_model=List[Membership])
@api_rate_limit()
async def list_family_members(
    request: Request,
    group_id: str,
    user_id: str = Depends(current_user),
    container: ServiceContainer = Depends(get_container),
):
    return await container.membership.list_members(user_id, group_id)


# =============================================================================
# Live updates
# =============================================================================


def _websocket_user(websocket: WebSocket) -> Optional[str]:
    # Browsers cannot set headers on WebSocket handshakes
    user_id = websocket.headers.get(USER_ID_HEADER) or websocket.query_params.get("user_id")
    if user_id is None or not user_id.strip():
        return None
    return user_id.strip()


@router.websocket("/live/{group_id}")
async def live_updates(websocket: WebSocket, group_id: str):
    """
    Stream positionUpdate events for one group.

    Message types sent to clients:
    - connection: sent once after the subscription is in place
    - positionUpdate: ``{"type": "positionUpdate", "data": <EnrichedReport>}``
    - pong: reply to a client ``{"type": "ping"}``
    - error: sent before the socket is closed, with code 1008 when the
      caller is not a member of the group and 1013 when the store is
      unavailable
    """
    container: ServiceContainer = websocket.app.state.container
    user_id = _websocket_user(websocket)
    if user_id is None:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        subscription = await container.broadcaster.subscribe(websocket, user_id, group_id)
    except AuthorizationError as e:
        await websocket.send_json({"type": "error", **e.to_dict()})
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    except AppException as e:
        logger.warning(
            "Live subscription failed",
            extra={"extra_data": {
                "group_id": group_id,
                "user_id": user_id,
                "error_code": e.error_code.value,
            }}
        )
        await websocket.send_json({"type": "error", **e.to_dict()})
        await websocket.close(code=WS_TRY_AGAIN_LATER)
        return

    try:
        await websocket.send_json({
            "type": "connection",
            "status": "connected",
            "group_id": group_id,
            "timestamp": _now_iso(),
        })

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Received non-JSON WebSocket message: {data[:100]}")
                continue

            message_type = message.get("type", "unknown") if isinstance(message, dict) else "unknown"
            if message_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now_iso()})
            else:
                logger.debug(
                    f"Received unknown WebSocket message type: {message_type}",
                    extra={"extra_data": {"group_id": group_id, "user_id": user_id}}
                )
    except WebSocketDisconnect:
        pass
    finally:
        await subscription.close()


# =============================================================================
# Health endpoints
# =============================================================================

health_router = APIRouter()


@health_router.get("/health")
async def health_basic(container: ServiceContainer = Depends(get_container)):
    """Returns 200 whenever the service is accepting requests."""
    result = await container.health.check_health()
    return {
        "status": result["status"],
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": result["timestamp"],
    }


@health_router.get("/health/ready")
async def health_ready(container: ServiceContainer = Depends(get_container)):
    """
    Readiness with dependency details.

    503 when Elasticsearch is unreachable. A road index that is still
    loading only degrades the status, since reports are then stored
    unmatched.
    """
    health_status = await container.health.check_readiness()
    response_data = {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        **health_status.to_dict(),
    }

    if health_status.is_unhealthy:
        response_data["failure_reasons"] = [
            {"dependency": dep.name, "error": dep.error}
            for dep in health_status.dependencies
            if not dep.healthy
        ]
        return JSONResponse(status_code=503, content=response_data)

    return response_data


@health_router.get("/health/live")
async def health_live(container: ServiceContainer = Depends(get_container)):
    """Returns 200 while the process runs, regardless of dependencies."""
    result = await container.health.check_liveness()
    return {
        "status": result["status"],
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": result["timestamp"],
    }


# =============================================================================
# Application factory
# =============================================================================


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    settings = settings or (container.settings if container else get_settings())
    validate_startup(settings)
    container = container or ServiceContainer(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting FamTracker API...")
        await container.start()
        yield
        logger.info("Shutting down FamTracker API...")
        await container.stop()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.container = container

    register_exception_handlers(app)

    # Only configured origins, no wildcards
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=[
            "Accept",
            "Accept-Language",
            "Content-Language",
            "Content-Type",
            "Authorization",
            "X-Request-ID",
            "X-User-ID",
            "X-Requested-With",
        ],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=600,
    )

    # Added after CORS so it runs for every request
    app.add_middleware(RequestIDMiddleware)

    setup_rate_limiting(
        app,
        api_rate_limit=settings.rate_limit_requests_per_minute,
        location_rate_limit=settings.rate_limit_location_requests_per_minute,
    )

    app.include_router(router)
    app.include_router(health_router)
    return app


def main() -> None:
    import uvicorn

    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(create_app(), host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
