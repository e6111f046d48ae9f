"""
API version information endpoint.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..core.dependencies import get_version_router
from ..core.versioning import ApiVersion, VersionRouter, get_changes_since, get_version_changelog

router = APIRouter()


@router.get("/api/v1/version", summary="API version information")
async def version_info(version_router: VersionRouter = Depends(get_version_router)) -> Dict[str, Any]:
    changelog = get_version_changelog(ApiVersion.V1)
    return {
        "version": ApiVersion.V1.value,
        "current_version": version_router.current.value,
        "supported_versions": version_router.supported_values,
        "changelog": changelog.to_dict() if changelog else None,
        "newer_changes": [entry.to_dict() for entry in get_changes_since(ApiVersion.V1)],
        "endpoints": {
            "products": "/api/v1/products",
            "health": "/api/health",
            "csrf_token": "/api/csrf-token",
            "auth": "/api/auth",
        },
    }
