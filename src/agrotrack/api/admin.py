"""
Admin maintenance endpoints.

Trash listing, restore, permanent deletion, retention purge and cache
invalidation. Every route requires an ADMIN session; mutations also require
a CSRF token.
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from ..core.cache import CacheKeys, TieredCache
from ..core.csrf import ADMIN_CSRF, CsrfProtect
from ..core.dependencies import get_cache, get_soft_delete
from ..core.envelope import paginated_response, success_response
from ..core.pagination import OffsetPagination, offset_pagination
from ..core.rate_limit import API_RATE_LIMIT, RateLimit
from ..core.session import SessionInfo, require_role
from ..core.soft_delete import SoftDeleteInterceptor, get_deletion_info
from ..models import CacheInvalidateRequest, HardDeleteRequest, PurgeRequest, RestoreRequest

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/admin",
    dependencies=[Depends(RateLimit(API_RATE_LIMIT)), Depends(CsrfProtect(ADMIN_CSRF))],
)

require_admin = require_role("ADMIN")

# Per-record entries cached outside the api:* namespace
RECORD_CACHE_PATTERNS = {"Product": CacheKeys.product("*")}


async def invalidate_records(cache: TieredCache, soft_delete: SoftDeleteInterceptor, model: str) -> None:
    await cache.invalidate("api:*")
    pattern = RECORD_CACHE_PATTERNS.get(soft_delete.data_access.resolve_name(model))
    if pattern is not None:
        await cache.invalidate(pattern)


@router.get("/trash/{model}", summary="List soft-deleted records")
async def list_trash(
    model: str,
    pagination: OffsetPagination = Depends(offset_pagination),
    session: SessionInfo = Depends(require_admin),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
) -> Dict[str, Any]:
    rows = await soft_delete.find_deleted(model, take=pagination.limit, skip=pagination.skip)
    total = await soft_delete.count_deleted(model)

    items = []
    for row in rows:
        info = get_deletion_info(row)
        items.append({**jsonable_encoder(row), "days_since_deleted": info.days_since_deleted})
    return paginated_response(items, pagination.page, pagination.limit, total)


@router.post("/trash/{model}/restore", summary="Restore soft-deleted records")
async def restore_records(
    model: str,
    body: RestoreRequest,
    session: SessionInfo = Depends(require_admin),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
    cache: TieredCache = Depends(get_cache),
) -> Dict[str, Any]:
    restored = await soft_delete.restore(model, body.where)
    await invalidate_records(cache, soft_delete, model)
    return success_response({"restored": restored}, f"{restored} record(s) restored")


@router.delete("/trash/{model}", summary="Permanently delete records")
async def hard_delete_records(
    model: str,
    body: HardDeleteRequest,
    session: SessionInfo = Depends(require_admin),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
    cache: TieredCache = Depends(get_cache),
) -> Dict[str, Any]:
    deleted = await soft_delete.hard_delete(model, body.where, actor=session.user_id, reason=body.reason)
    await invalidate_records(cache, soft_delete, model)
    return success_response({"deleted": deleted}, f"{deleted} record(s) permanently deleted")


@router.post("/purge", summary="Purge soft-deleted records past retention")
async def purge_deleted(
    body: PurgeRequest,
    session: SessionInfo = Depends(require_admin),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
) -> Dict[str, Any]:
    if body.models:
        results = {}
        for model in body.models:
            results[model] = await soft_delete.purge_old_deleted(model, body.older_than_days)
    else:
        results = await soft_delete.purge_all(body.older_than_days)

    logger.info("Purge requested", user_id=session.user_id, results=results)
    return success_response({"purged": results, "total": sum(results.values())})


@router.post("/cache/invalidate", summary="Invalidate cached entries")
async def invalidate_cache(
    body: CacheInvalidateRequest,
    session: SessionInfo = Depends(require_admin),
    cache: TieredCache = Depends(get_cache),
) -> Dict[str, Any]:
    await cache.invalidate(body.pattern)
    logger.info("Cache invalidated", pattern=body.pattern, user_id=session.user_id)
    return success_response({"pattern": body.pattern, "stats": cache.stats()}, "Cache invalidated")
