"""
Health check endpoint.

- /api/health: 200 when healthy or degraded, 503 when unhealthy
"""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request, Response, status

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/api/health",
    summary="Service health",
    description="""
    Aggregated health of the service's dependencies.

    **Checks:**
    - database: SELECT 1 round trip
    - cache: Redis ping; local tier is always available
    - memory: process memory against the configured budget
    - uptime: seconds since start

    Database down or memory critical returns 503. Everything else returns 200
    with status "healthy" or "degraded".
    """,
)
async def health_check(request: Request, response: Response) -> Dict[str, Any]:
    health_checker = getattr(request.app.state, "health_checker", None)
    settings = getattr(request.app.state, "settings", None)

    if health_checker is None:
        logger.warning("Health checker not initialized")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "unhealthy",
            "reason": "health_checker_not_initialized",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    try:
        report = await health_checker.check_all()
    except Exception as e:
        logger.error(
            "Health check error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.version if settings else "unknown",
            "environment": settings.environment if settings else "unknown",
            "checks": {
                "database": {"status": "down", "error": "Health check failed"},
                "cache": {"status": "down", "error": "Health check failed"},
                "memory": {"status": "down", "used_mb": 0, "total_mb": 0, "percentage": 0},
                "uptime": 0,
            },
        }

    response.status_code = report.http_status
    return report.to_dict()
