"""
CallSync - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from app import __version__

from .schemas import HealthResponse

router = APIRouter(prefix="/api", tags=["system"])


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time

    Used by load balancers and monitoring systems. Not rate limited.
    """
    settings = request.app.state.settings
    gateway = getattr(request.app.state, "gateway", None)
    checks = {}

    checks["upstream"] = {
        "status": "healthy" if settings.upstream_api_key else "degraded",
        "message": "API key configured" if settings.upstream_api_key else "UPSTREAM_API_KEY is not set",
    }

    checks["analysis"] = {
        "status": "healthy" if gateway is not None else "degraded",
        "backend": gateway.analysis_backend if gateway is not None else settings.analysis_backend,
    }

    if settings.rate_limit_enabled and gateway is not None:
        checks["rate_limit"] = {
            "status": "healthy",
            "tracked_keys": len(gateway.admission.store),
            "max_entries": settings.rate_limit_max_entries,
        }
    else:
        checks["rate_limit"] = {"status": "disabled"}

    all_healthy = all(
        c.get("status") in ("healthy", "disabled")
        for c in checks.values()
    )

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": _now_iso(),
        "version": __version__,
        "environment": settings.app_env,
        "checks": checks,
    }
