"""Health check endpoint."""
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from app import database

router = APIRouter(tags=["health"])

_started = time.monotonic()


class HealthServices(BaseModel):
    database: str
    redis: str


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    services: HealthServices
    uptime: float


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """Report store and cache connectivity. 503 when an enabled one is down."""
    state = request.app.state

    db_status = "connected" if await database.ping(state.engine) else "disconnected"

    cache = state.cache
    if not cache.redis_enabled:
        redis_status = "disabled"
    elif await cache.ping():
        redis_status = "connected"
    else:
        redis_status = "disconnected"

    healthy = db_status == "connected" and redis_status != "disconnected"
    response.status_code = status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="ok" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc),
        services=HealthServices(database=db_status, redis=redis_status),
        uptime=round(time.monotonic() - _started, 3),
    )
