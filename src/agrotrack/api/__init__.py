"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /api/health - Dependency health
- /api/csrf-token - CSRF token issuance
- /api/v1/version - Version information and changelog
- /api/products - Product catalogue (also under /api/v1)
- /api/admin/* - Trash, restore, hard delete, purge, cache invalidation
- /api/auth/signin-attempt - Rate-limited sign-in entry
- /metrics - Prometheus metrics
"""
from .admin import router as admin_router
from .auth import router as auth_router
from .csrf import router as csrf_router
from .health import router as health_router
from .metrics import router as metrics_router
from .products import router as products_router
from .version import router as version_router

__all__ = [
    "admin_router",
    "auth_router",
    "csrf_router",
    "health_router",
    "metrics_router",
    "products_router",
    "version_router",
]
