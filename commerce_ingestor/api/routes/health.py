"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from ...utils.health import HealthStatus, get_health_checker

router = APIRouter()


@router.get("/health")
async def health_check() -> JSONResponse:
    """Aggregate component health; 503 when a required component is unhealthy."""

    health = await get_health_checker().check_all(required_components=["database"])
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if health.status == HealthStatus.UNHEALTHY
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=health.model_dump(mode="json"))


@router.get("/health/live")
async def liveness() -> dict[str, str]:
    return {"status": "alive", "service": "commerce_ingestor"}
