"""
Main FastAPI application entry point.

This module sets up the FastAPI app with all middleware, routes, and lifecycle events.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from starlette.middleware.sessions import SessionMiddleware

from .api import (
    admin_router,
    auth_router,
    csrf_router,
    health_router,
    metrics_router,
    products_router,
    version_router,
)
from .config import Settings, get_settings
from .core.cache import LocalCache, RedisStore, TieredCache
from .core.csrf import CSRF_HEADER, CsrfGuard
from .core.data_access import DataAccess
from .core.db import Database
from .core.envelope import ErrorEnvelopeMiddleware, RequestContextMiddleware, register_exception_handlers
from .core.health import HealthChecker
from .core.logging import configure_logging
from .core.metrics import MetricsCollector
from .core.rate_limit import RateLimiter
from .core.soft_delete import SoftDeleteInterceptor
from .core.versioning import VersionRouter


def _build_store(settings: Settings, redis_client: Optional[Redis]) -> Optional[RedisStore]:
    cache_settings = settings.cache
    options = {
        "reconnect_cooldown": cache_settings.reconnect_cooldown_seconds,
        "max_retries": cache_settings.max_reconnect_attempts,
    }
    if redis_client is not None:
        return RedisStore(redis_client, **options)
    if not cache_settings.enabled:
        return None
    return RedisStore.from_url(
        cache_settings.redis_url,
        socket_timeout=cache_settings.socket_timeout_seconds,
        connect_timeout=cache_settings.connect_timeout_seconds,
        **options,
    )


def create_lifespan_handler(settings: Settings, redis_client: Optional[Redis] = None) -> Any:
    """Create a lifespan handler with access to settings."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Builds the long-lived services once and publishes them on ``app.state``
        for the dependencies in ``core.dependencies``.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting AgroTrack service", version=settings.version, environment=settings.environment)

        app.state.settings = settings

        metrics_collector = MetricsCollector(version=settings.version)
        app.state.metrics = metrics_collector

        database = Database(settings.database.url, echo=settings.database.echo)
        await database.create_all()
        app.state.database = database

        data_access = DataAccess(database.engine)
        app.state.data_access = data_access
        app.state.soft_delete = SoftDeleteInterceptor(
            data_access,
            retention_days=settings.soft_delete.retention_days,
            metrics=metrics_collector,
        )

        store = _build_store(settings, redis_client)
        if store is not None:
            if not await store.connect():
                logger.warning("Redis unavailable at startup, serving from memory cache", error=store.last_error)
            metrics_collector.update_redis_state(store.state.value)
        else:
            logger.info("Redis tier disabled, using memory cache only")

        cache = TieredCache(
            LocalCache(
                default_ttl=settings.cache.memory_ttl_seconds,
                max_items=settings.cache.memory_max_items,
            ),
            store,
            memory_ttl=settings.cache.memory_ttl_seconds,
            redis_ttl=settings.cache.redis_ttl_seconds,
            metrics=metrics_collector,
        )
        app.state.cache = cache

        app.state.rate_limiter = RateLimiter(
            cache,
            enabled=settings.rate_limit.enabled,
            trust_proxy=settings.rate_limit.trust_proxy_headers,
            metrics=metrics_collector,
        )
        app.state.csrf_guard = CsrfGuard(
            settings.csrf.secret,
            ttl_seconds=settings.csrf.token_ttl_seconds,
            exempt_paths=settings.csrf.exempt_paths,
            trust_proxy=settings.rate_limit.trust_proxy_headers,
            metrics=metrics_collector,
        )
        app.state.version_router = VersionRouter(
            current=settings.api.current_version,
            supported=settings.api.supported_versions,
        )
        app.state.health_checker = HealthChecker(
            database,
            cache,
            version=settings.version,
            environment=settings.environment,
            memory_limit_mb=settings.health.memory_limit_mb,
            memory_degraded_percent=settings.health.memory_degraded_percent,
            memory_critical_percent=settings.health.memory_critical_percent,
        )

        try:
            logger.info("AgroTrack service started successfully")
            yield
        finally:
            logger.info("Shutting down AgroTrack service")

            await cache.close()
            await database.dispose()

            logger.info("AgroTrack service shutdown complete")

    return lifespan


def create_app(settings: Optional[Settings] = None, redis_client: Optional[Redis] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    ``redis_client`` replaces the client built from ``cache.redis_url``.
    """
    settings = settings or get_settings()

    configure_logging(settings.log_level, json_logs=settings.log_json or settings.is_production)

    app = FastAPI(
        title="AgroTrack",
        description="Farm-to-table marketplace API",
        version=settings.version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(settings, redis_client),
    )
    app.state.settings = settings

    register_exception_handlers(app)

    # Outermost to innermost: RequestContext, CORS, ErrorEnvelope, Session
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        same_site="lax",
        https_only=settings.is_production,
    )
    app.add_middleware(ErrorEnvelopeMiddleware, expose_details=settings.is_development)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*", CSRF_HEADER],
        expose_headers=["X-Request-ID", "X-API-Version", "X-RateLimit-Remaining", "Retry-After"],
    )
    app.add_middleware(RequestContextMiddleware)

    app.include_router(health_router, tags=["health"])
    app.include_router(csrf_router, tags=["security"])
    app.include_router(auth_router, tags=["auth"])
    app.include_router(version_router, tags=["version"])
    app.include_router(products_router, prefix="/api", tags=["products"])
    app.include_router(products_router, prefix="/api/v1", tags=["products"], include_in_schema=False)
    app.include_router(admin_router, tags=["admin"])
    app.include_router(metrics_router, tags=["metrics"])

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "agrotrack.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
