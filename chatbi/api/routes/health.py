"""
Health Check Routes

Service liveness and readiness.
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from chatbi import __version__
from chatbi.models.api import HealthResponse, ReadinessResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health() -> HealthResponse:
    """Basic liveness check; always succeeds while the process is alive."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness() -> JSONResponse:
    """
    Readiness check for service dependencies.

    Returns:
        200 OK when the registry and pipeline are initialized
        503 Service Unavailable otherwise
    """
    from chatbi.api.main import app_state

    checks = {
        "registry": app_state.get("registry") is not None,
        "permissions": app_state.get("permission_store") is not None,
        "pipeline": app_state.get("pipeline") is not None,
    }
    all_ready = all(checks.values())
    if not all_ready:
        logger.warning(f"Readiness check failed: {checks}")

    response = ReadinessResponse(
        status="ready" if all_ready else "not_ready",
        version=__version__,
        timestamp=datetime.now(UTC).isoformat(),
        checks=checks,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(),
    )
