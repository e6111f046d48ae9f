"""
Soft-delete interception.

For the entity types in ``SoftDeleteModel`` a delete becomes an update that
stamps ``deleted_at`` and reads only see live rows unless the caller asks
otherwise by giving an explicit ``deleted_at`` filter. Restore, trash
listing, hard delete and retention purging live here too.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from ..models.entities import utcnow
from .data_access import UNSET, DataAccess, ModelDelegate, QueryAction, QueryRequest, Where
from .exceptions import ErrorCode, ValidationError

logger = structlog.get_logger(__name__)


class SoftDeleteModel(str, Enum):
    USER = "User"
    CUSTOMER = "Customer"
    FARMER = "Farmer"
    PRODUCT = "Product"
    ORDER = "Order"
    ORDER_ITEM = "OrderItem"
    ADDRESS = "Address"
    PRODUCT_REVIEW = "ProductReview"
    SUBSCRIPTION = "Subscription"


SOFT_DELETE_MODELS = frozenset(model.value for model in SoftDeleteModel)

READ_ACTIONS = frozenset(
    {
        QueryAction.FIND_UNIQUE,
        QueryAction.FIND_FIRST,
        QueryAction.FIND_MANY,
        QueryAction.COUNT,
        QueryAction.AGGREGATE,
    }
)

DELETE_REWRITES = {
    QueryAction.DELETE: QueryAction.UPDATE,
    QueryAction.DELETE_MANY: QueryAction.UPDATE_MANY,
}

ModelRef = Union[SoftDeleteModel, str]


def supports_soft_delete(model: ModelRef) -> bool:
    name = model.value if isinstance(model, SoftDeleteModel) else model
    return name in SOFT_DELETE_MODELS


def with_live_filter(where: Optional[Where]) -> Where:
    """
    Default ``deleted_at`` to NULL unless the caller set it.

    An explicit ``deleted_at`` of any value, including ``None``, is kept as is.
    """
    merged = dict(where or {})
    if "deleted_at" not in merged:
        merged["deleted_at"] = None
    return merged


def rewrite_delete(request: QueryRequest, now: datetime) -> QueryRequest:
    """
    Turn DELETE/DELETE_MANY into an update stamping ``deleted_at``.

    Only live rows are matched, so deleting a trashed row again is a no-op
    (NotFound for a single delete) and ``delete_many`` counts live rows only.
    Pass an explicit ``deleted_at`` clause, e.g. ``with_deleted()``, to
    re-stamp trashed rows as well.
    """
    target = DELETE_REWRITES.get(request.action)
    if target is None:
        return request
    return replace(
        request,
        action=target,
        where=with_live_filter(request.where),
        data={"deleted_at": now},
    )


def apply_live_filter(request: QueryRequest) -> QueryRequest:
    if request.action not in READ_ACTIONS:
        return request
    return request.with_where(with_live_filter(request.where))


def with_deleted() -> Where:
    """Filter fragment disabling the live-row default."""
    return {"deleted_at": {"not": UNSET}}


def only_deleted() -> Where:
    return {"deleted_at": {"not": None}}


def _deleted_at(record: Any) -> Any:
    if record is None:
        return None
    if isinstance(record, Mapping):
        return record.get("deleted_at")
    return getattr(record, "deleted_at", None)


def is_deleted(record: Any) -> bool:
    return _deleted_at(record) is not None


@dataclass
class DeletionInfo:
    is_deleted: bool
    deleted_at: Optional[datetime] = None
    days_since_deleted: Optional[int] = None


def _as_utc(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def get_deletion_info(record: Any, now: Optional[datetime] = None) -> DeletionInfo:
    raw = _deleted_at(record)
    if raw is None:
        return DeletionInfo(is_deleted=False)
    deleted_at = _as_utc(raw)
    current = _as_utc(now) if now is not None else utcnow()
    days = math.floor((current - deleted_at).total_seconds() / 86400)
    return DeletionInfo(is_deleted=True, deleted_at=deleted_at, days_since_deleted=days)


class InterceptedDelegate:
    """Same surface as ``ModelDelegate`` with soft-delete rules applied."""

    def __init__(self, interceptor: "SoftDeleteInterceptor", model: str) -> None:
        self._interceptor = interceptor
        self.name = model

    async def _run(self, action: QueryAction, where: Optional[Where] = None, data: Optional[Dict[str, Any]] = None, **options: Any) -> Any:
        request = QueryRequest(model=self.name, action=action, where=where, data=data, options=options)
        return await self._interceptor.execute(request)

    async def find_unique(self, where: Where) -> Optional[Dict[str, Any]]:
        return await self._run(QueryAction.FIND_UNIQUE, where)

    async def find_first(self, where: Optional[Where] = None, order_by: Any = None) -> Optional[Dict[str, Any]]:
        return await self._run(QueryAction.FIND_FIRST, where, order_by=order_by)

    async def find_many(
        self,
        where: Optional[Where] = None,
        order_by: Any = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await self._run(QueryAction.FIND_MANY, where, order_by=order_by, take=take, skip=skip)

    async def count(self, where: Optional[Where] = None) -> int:
        return await self._run(QueryAction.COUNT, where)

    async def aggregate(self, where: Optional[Where] = None, **fields: Any) -> Dict[str, Dict[str, Any]]:
        return await self._run(QueryAction.AGGREGATE, where, **fields)

    async def create(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._run(QueryAction.CREATE, data=dict(data))

    async def update(self, where: Where, data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._run(QueryAction.UPDATE, where, dict(data))

    async def update_many(self, where: Optional[Where], data: Mapping[str, Any]) -> int:
        return await self._run(QueryAction.UPDATE_MANY, where, dict(data))

    async def delete(self, where: Where) -> Any:
        return await self._run(QueryAction.DELETE, where)

    async def delete_many(self, where: Optional[Where] = None) -> Any:
        """Soft-delete matching live rows and return how many were stamped."""
        return await self._run(QueryAction.DELETE_MANY, where)


class SoftDeleteInterceptor:
    """Wraps a ``DataAccess`` handle with soft-delete semantics."""

    def __init__(
        self,
        data_access: DataAccess,
        clock: Callable[[], datetime] = utcnow,
        retention_days: int = 30,
        metrics: Any = None,
    ) -> None:
        self.data_access = data_access
        self.retention_days = retention_days
        self.metrics = metrics
        self._clock = clock
        logger.info("Soft delete interception enabled", models=sorted(SOFT_DELETE_MODELS))

    def _name(self, model: ModelRef) -> str:
        raw = model.value if isinstance(model, SoftDeleteModel) else model
        return self.data_access.resolve_name(raw)

    def _raw(self, model: ModelRef) -> ModelDelegate:
        return self.data_access.model(self._name(model))

    def _declared(self, model: ModelRef) -> str:
        name = self._name(model)
        if not supports_soft_delete(name):
            raise ValidationError(f"Model '{name}' does not support soft delete", code=ErrorCode.INVALID_INPUT)
        return name

    def _record(self, model: str, action: str) -> None:
        if self.metrics is not None:
            self.metrics.record_soft_delete(model, action)

    def model(self, model: ModelRef) -> InterceptedDelegate:
        return InterceptedDelegate(self, self._name(model))

    def prepare(self, request: QueryRequest) -> QueryRequest:
        """Apply the per-action rewrites; undeclared models pass through untouched."""
        if not supports_soft_delete(request.model):
            return request
        rewritten = rewrite_delete(request, self._clock())
        if rewritten is not request:
            logger.info(
                "Soft delete: converting delete to update",
                model=request.model,
                action=request.action.value,
                where=request.where,
            )
            self._record(request.model, "soft_delete")
        return apply_live_filter(rewritten)

    async def execute(self, request: QueryRequest) -> Any:
        return await self.data_access.execute(self.prepare(request))

    async def restore(self, model: ModelRef, where: Where) -> int:
        name = self._declared(model)
        scoped = {**where, "deleted_at": {"not": None}}
        count = await self._raw(name).update_many(scoped, {"deleted_at": None})
        logger.info("Record restored", model=name, where=where, count=count)
        self._record(name, "restore")
        return count

    async def hard_delete(
        self,
        model: ModelRef,
        where: Where,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """Permanently remove rows matching plain ``column == value`` pairs."""
        if not where:
            raise ValidationError(
                "Where clause cannot be empty for hard delete",
                code=ErrorCode.MISSING_REQUIRED_FIELD,
                field="where",
            )
        name = self._declared(model)
        delegate = self._raw(name)
        for column, value in where.items():
            if column not in delegate.table.c:
                raise ValidationError(f"Unknown field '{column}' for {name}", code=ErrorCode.INVALID_INPUT, field=column)
            if isinstance(value, Mapping):
                raise ValidationError(
                    "Hard delete only accepts plain column values",
                    code=ErrorCode.INVALID_INPUT,
                    field=column,
                )

        logger.warning("Hard delete operation", model=name, where=where, actor=actor, reason=reason)
        count = await delegate.delete_many(where)
        self._record(name, "hard_delete")
        return count

    async def purge_old_deleted(self, model: ModelRef, older_than_days: Optional[int] = None) -> int:
        name = self._declared(model)
        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = self._clock() - timedelta(days=days)

        logger.info("Purging old deleted records", model=name, older_than_days=days, cutoff=cutoff.isoformat())
        count = await self._raw(name).delete_many({"deleted_at": {"not": None, "lt": cutoff}})
        logger.info("Purge completed", model=name, deleted_count=count)
        self._record(name, "purge")
        return count

    async def purge_all(self, older_than_days: Optional[int] = None) -> Dict[str, int]:
        results = {}
        for model in SoftDeleteModel:
            results[model.value] = await self.purge_old_deleted(model, older_than_days)
        logger.info("Purge of all soft-delete models completed", total=sum(results.values()), results=results)
        return results

    async def find_deleted(
        self,
        model: ModelRef,
        where: Optional[Where] = None,
        order_by: Any = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        name = self._declared(model)
        return await self._raw(name).find_many(
            {**(where or {}), **only_deleted()},
            order_by=order_by or {"deleted_at": "desc"},
            take=take,
            skip=skip,
        )

    async def count_deleted(self, model: ModelRef, where: Optional[Where] = None) -> int:
        name = self._declared(model)
        return await self._raw(name).count({**(where or {}), **only_deleted()})
