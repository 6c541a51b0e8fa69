"""Health check endpoint."""

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from ltcms.core import check_db_connection, settings

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    secrets: str


_HEALTH_RESPONSES: dict[int | str, dict] = {
    status.HTTP_200_OK: {"description": "Database reachable and signing keys loaded"},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
}


@router.get("/health", response_model=HealthResponse, responses=_HEALTH_RESPONSES)
@router.get("/api/health", response_model=HealthResponse, responses=_HEALTH_RESPONSES)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """Report database connectivity and whether the signing keys are loaded.

    Returns 503 when either check fails, so orchestrators stop routing logins
    to an instance that cannot serve them.
    """
    db_healthy = await check_db_connection()
    secrets_loaded = getattr(request.app.state, "security_context", None) is not None
    healthy = db_healthy and secrets_loaded

    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        secrets="loaded" if secrets_loaded else "missing",
    )
