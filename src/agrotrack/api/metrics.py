"""
Prometheus metrics endpoint.

Exposes metrics in Prometheus text format for scraping.
"""

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Prometheus metrics endpoint in standard text format.

    **Key Metrics:**
    - http_requests_total{method,endpoint,status_code} - Requests served
    - cache_lookups_total{tier,outcome} - Cache hits, misses and errors
    - rate_limit_rejections_total{identifier} - Throttled requests
    - csrf_failures_total{reason} - Rejected mutations
    - soft_delete_operations_total{model,action} - Data lifecycle operations
    - redis_connection_state{state} - Current Redis connection state
    """,
)
async def get_metrics(request: Request) -> Response:
    metrics_collector = getattr(request.app.state, "metrics", None)

    if not metrics_collector:
        logger.warning("Metrics collector not initialized")
        return Response(
            content="# Metrics collector not initialized\n",
            media_type=CONTENT_TYPE_LATEST,
        )

    cache = getattr(request.app.state, "cache", None)
    if cache is not None and cache.store is not None:
        metrics_collector.update_redis_state(cache.store.state.value)

    metrics_data = metrics_collector.render()
    logger.debug("Metrics scraped successfully", size_bytes=len(metrics_data))

    return Response(
        content=metrics_data,
        media_type=CONTENT_TYPE_LATEST,
    )
