"""
FastAPI dependencies resolving the long-lived services built in the lifespan.
"""

from typing import TYPE_CHECKING

from fastapi import Request

from ..config import Settings

if TYPE_CHECKING:
    from .cache import TieredCache
    from .csrf import CsrfGuard
    from .data_access import DataAccess
    from .db import Database
    from .health import HealthChecker
    from .metrics import MetricsCollector
    from .rate_limit import RateLimiter
    from .soft_delete import SoftDeleteInterceptor
    from .versioning import VersionRouter


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache(request: Request) -> "TieredCache":
    return request.app.state.cache


def get_rate_limiter(request: Request) -> "RateLimiter":
    return request.app.state.rate_limiter


def get_csrf_guard(request: Request) -> "CsrfGuard":
    return request.app.state.csrf_guard


def get_database(request: Request) -> "Database":
    return request.app.state.database


def get_data_access(request: Request) -> "DataAccess":
    return request.app.state.data_access


def get_soft_delete(request: Request) -> "SoftDeleteInterceptor":
    return request.app.state.soft_delete


def get_version_router(request: Request) -> "VersionRouter":
    return request.app.state.version_router


def get_health_checker(request: Request) -> "HealthChecker":
    return request.app.state.health_checker


def get_metrics(request: Request) -> "MetricsCollector":
    return request.app.state.metrics
