"""
Product catalogue endpoints.

Reads are served through the tiered cache and only ever see live rows;
DELETE is a soft delete. Mutations require a CSRF token and a farmer or
admin session.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.encoders import jsonable_encoder

from ..core.cache import CacheKeys, CacheOptions, TieredCache
from ..core.csrf import USER_CSRF, CsrfProtect
from ..core.dependencies import get_cache, get_soft_delete, get_version_router
from ..core.envelope import created_response, paginated_response, success_response
from ..core.exceptions import NotFoundError
from ..core.pagination import OffsetPagination, offset_pagination
from ..core.rate_limit import API_RATE_LIMIT, SEARCH_RATE_LIMIT, RateLimit
from ..core.session import SessionInfo, require_role
from ..core.soft_delete import SoftDeleteInterceptor, SoftDeleteModel
from ..core.versioning import ApiVersion, VersionMigration, VersionRouter, apply_migration
from ..models import ProductCreateRequest

logger = structlog.get_logger(__name__)

router = APIRouter()

LIST_CACHE = CacheOptions(memory_ttl=60, redis_ttl=300)
DETAIL_CACHE = CacheOptions(memory_ttl=300, redis_ttl=3600)
LIST_PATTERN = "api:products*"


def _nest_pricing(product: Dict[str, Any]) -> Dict[str, Any]:
    migrated = {k: v for k, v in product.items() if k not in ("price", "unit")}
    migrated["pricing"] = {"amount": product["price"], "unit": product["unit"]}
    return migrated


PRODUCT_MIGRATIONS = [VersionMigration(ApiVersion.V1, ApiVersion.V2, _nest_pricing)]


@router.get(
    "/products",
    dependencies=[Depends(RateLimit(SEARCH_RATE_LIMIT))],
    summary="List live products",
)
async def list_products(
    request: Request,
    response: Response,
    category: Optional[str] = Query(None, max_length=64),
    search: Optional[str] = Query(None, max_length=100),
    pagination: OffsetPagination = Depends(offset_pagination),
    cache: TieredCache = Depends(get_cache),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
    version_router: VersionRouter = Depends(get_version_router),
) -> Dict[str, Any]:
    products = soft_delete.model(SoftDeleteModel.PRODUCT)

    where: Dict[str, Any] = {"is_active": True}
    if category:
        where["category"] = category
    if search:
        where["name"] = {"contains": search}
    params = {"category": category, "search": search, "page": pagination.page, "limit": pagination.limit}

    @cache.cached(CacheKeys.api("products", params), LIST_CACHE)
    async def load_page() -> Dict[str, Any]:
        items = await products.find_many(
            where,
            order_by={"created_at": "desc"},
            take=pagination.limit,
            skip=pagination.skip,
        )
        total = await products.count(where)
        return {"items": jsonable_encoder(items), "total": total}

    async def v1() -> Dict[str, Any]:
        page = await load_page()
        return paginated_response(page["items"], pagination.page, pagination.limit, page["total"])

    return await version_router.dispatch({ApiVersion.V1: v1}, request, response)


@router.get(
    "/products/{product_id}",
    dependencies=[Depends(RateLimit(API_RATE_LIMIT))],
    summary="Get a live product",
)
async def get_product(
    product_id: str,
    request: Request,
    response: Response,
    cache: TieredCache = Depends(get_cache),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
    version_router: VersionRouter = Depends(get_version_router),
) -> Dict[str, Any]:
    async def fetch() -> Dict[str, Any]:
        product = await soft_delete.model(SoftDeleteModel.PRODUCT).find_unique({"id": product_id})
        if product is None:
            raise NotFoundError("Product not found")
        return jsonable_encoder(product)

    async def v1() -> Dict[str, Any]:
        return success_response(await cache.get(CacheKeys.product(product_id), fetch, DETAIL_CACHE))

    async def v2() -> Dict[str, Any]:
        product = await cache.get(CacheKeys.product(product_id), fetch, DETAIL_CACHE)
        return success_response(apply_migration(product, ApiVersion.V1, ApiVersion.V2, PRODUCT_MIGRATIONS))

    return await version_router.dispatch({ApiVersion.V1: v1, ApiVersion.V2: v2}, request, response)


@router.post(
    "/products",
    status_code=201,
    dependencies=[Depends(RateLimit(API_RATE_LIMIT)), Depends(CsrfProtect(USER_CSRF))],
    summary="Create a product",
)
async def create_product(
    body: ProductCreateRequest,
    response: Response,
    session: SessionInfo = Depends(require_role("FARMER", "ADMIN")),
    cache: TieredCache = Depends(get_cache),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
) -> Dict[str, Any]:
    product = await soft_delete.model(SoftDeleteModel.PRODUCT).create(body.model_dump())
    await cache.invalidate(LIST_PATTERN)

    logger.info("Product created", product_id=product["id"], user_id=session.user_id)
    return created_response(response, jsonable_encoder(product), "Product created successfully")


@router.delete(
    "/products/{product_id}",
    dependencies=[Depends(RateLimit(API_RATE_LIMIT)), Depends(CsrfProtect(USER_CSRF))],
    summary="Soft delete a product",
)
async def delete_product(
    product_id: str,
    session: SessionInfo = Depends(require_role("FARMER", "ADMIN")),
    cache: TieredCache = Depends(get_cache),
    soft_delete: SoftDeleteInterceptor = Depends(get_soft_delete),
) -> Dict[str, Any]:
    await soft_delete.model(SoftDeleteModel.PRODUCT).delete({"id": product_id})
    await cache.delete(CacheKeys.product(product_id))
    await cache.invalidate(LIST_PATTERN)

    logger.info("Product deleted", product_id=product_id, user_id=session.user_id)
    return success_response({"id": product_id, "deleted": True}, "Product deleted")
