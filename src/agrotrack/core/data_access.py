"""
Per-entity data access on SQLAlchemy Core.

Each ``ModelDelegate`` offers find/count/aggregate/create/update/delete over
one table, taking filters in a small dictionary grammar::

    {"name": "Kale"}                         # equality
    {"deleted_at": None}                     # IS NULL
    {"deleted_at": {"not": None}}            # IS NOT NULL
    {"price": {"gte": 2, "lt": 10}}          # comparisons
    {"category": {"in": ["veg", "fruit"]}}   # membership
    {"name": {"contains": "kale"}}           # substring

Every value is sent as a bound parameter and every column name is checked
against the table, so filters coming from request data are safe to pass in.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog
from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..models.entities import MODELS
from .exceptions import ConflictError, DatabaseError, ErrorCode, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


class _Unset:
    """Marker for a filter clause that deliberately adds no condition."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()

Where = Dict[str, Any]


class QueryAction(str, Enum):
    FIND_UNIQUE = "find_unique"
    FIND_FIRST = "find_first"
    FIND_MANY = "find_many"
    COUNT = "count"
    AGGREGATE = "aggregate"
    CREATE = "create"
    UPDATE = "update"
    UPDATE_MANY = "update_many"
    DELETE = "delete"
    DELETE_MANY = "delete_many"


@dataclass(frozen=True)
class QueryRequest:
    """One data-access call, in a form interceptors can inspect and rewrite."""

    model: str
    action: QueryAction
    where: Optional[Where] = None
    data: Optional[Dict[str, Any]] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def with_where(self, where: Optional[Where]) -> "QueryRequest":
        return replace(self, where=where)


_COMPARISONS = {
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
}


def _column(table: Table, name: str) -> Any:
    if name not in table.c:
        raise ValidationError(f"Unknown field '{name}' for {table.name}", code=ErrorCode.INVALID_INPUT, field=name)
    return table.c[name]


def compile_where(table: Table, where: Optional[Mapping[str, Any]]) -> List[Any]:
    """Translate a filter mapping into SQLAlchemy clauses."""
    clauses: List[Any] = []
    for name, condition in (where or {}).items():
        col = _column(table, name)

        if not isinstance(condition, Mapping):
            clauses.append(col.is_(None) if condition is None else col == condition)
            continue

        for op, value in condition.items():
            if value is UNSET:
                continue
            if op == "equals":
                clauses.append(col.is_(None) if value is None else col == value)
            elif op == "not":
                clauses.append(col.is_not(None) if value is None else col != value)
            elif op == "in":
                clauses.append(col.in_(list(value)))
            elif op == "not_in":
                clauses.append(col.not_in(list(value)))
            elif op == "contains":
                clauses.append(col.contains(str(value), autoescape=True))
            elif op in _COMPARISONS:
                clauses.append(_COMPARISONS[op](col, value))
            else:
                raise ValidationError(f"Unsupported filter operator '{op}'", code=ErrorCode.INVALID_INPUT, field=name)
    return clauses


def compile_order_by(table: Table, order_by: Union[None, Mapping[str, str], Sequence[Mapping[str, str]]]) -> List[Any]:
    if not order_by:
        return []
    specs = [order_by] if isinstance(order_by, Mapping) else list(order_by)
    result = []
    for spec in specs:
        for name, direction in spec.items():
            col = _column(table, name)
            result.append(col.desc() if str(direction).lower() == "desc" else col.asc())
    return result


class ModelDelegate:
    """Data access for a single table."""

    def __init__(self, engine: AsyncEngine, name: str, table: Table) -> None:
        self.engine = engine
        self.name = name
        self.table = table

    def _check_data(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        for key in data:
            _column(self.table, key)
        return dict(data)

    def _primary_key(self) -> Any:
        return list(self.table.primary_key.columns)[0]

    async def _run(self, operation: str, statement: Any) -> Any:
        try:
            async with self.engine.begin() as conn:
                return await conn.execute(statement)
        except IntegrityError as e:
            logger.warning("Integrity error", model=self.name, operation=operation, error=str(e.orig))
            raise ConflictError("Resource already exists or violates a constraint", code=ErrorCode.ALREADY_EXISTS) from e
        except SQLAlchemyError as e:
            logger.error("Database operation failed", model=self.name, operation=operation, error=str(e), exc_info=True)
            raise DatabaseError(details={"model": self.name, "operation": operation}) from e

    async def find_unique(self, where: Where) -> Optional[Dict[str, Any]]:
        stmt = select(self.table).where(*compile_where(self.table, where)).limit(1)
        result = await self._run("find_unique", stmt)
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def find_first(self, where: Optional[Where] = None, order_by: Any = None) -> Optional[Dict[str, Any]]:
        rows = await self.find_many(where=where, order_by=order_by, take=1)
        return rows[0] if rows else None

    async def find_many(
        self,
        where: Optional[Where] = None,
        order_by: Any = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        stmt = select(self.table).where(*compile_where(self.table, where))
        ordering = compile_order_by(self.table, order_by)
        if ordering:
            stmt = stmt.order_by(*ordering)
        if take is not None:
            stmt = stmt.limit(take)
        if skip:
            stmt = stmt.offset(skip)
        result = await self._run("find_many", stmt)
        return [dict(row) for row in result.mappings().all()]

    async def count(self, where: Optional[Where] = None) -> int:
        stmt = select(func.count()).select_from(self.table).where(*compile_where(self.table, where))
        result = await self._run("count", stmt)
        return int(result.scalar_one())

    async def aggregate(
        self,
        where: Optional[Where] = None,
        _sum: Sequence[str] = (),
        _avg: Sequence[str] = (),
        _min: Sequence[str] = (),
        _max: Sequence[str] = (),
        _count: bool = False,
    ) -> Dict[str, Dict[str, Any]]:
        """Aggregates keyed like ``{"_sum": {"price": 12.5}, "_count": {"_all": 3}}``."""
        columns: List[Any] = []
        labels: List[tuple] = []
        for group, fn, fields in (("_sum", func.sum, _sum), ("_avg", func.avg, _avg), ("_min", func.min, _min), ("_max", func.max, _max)):
            for name in fields:
                label = f"{group}__{name}"
                columns.append(fn(_column(self.table, name)).label(label))
                labels.append((group, name, label))
        if _count or not columns:
            columns.append(func.count().label("_count___all"))
            labels.append(("_count", "_all", "_count___all"))

        stmt = select(*columns).select_from(self.table).where(*compile_where(self.table, where))
        result = await self._run("aggregate", stmt)
        row = result.mappings().one()

        output: Dict[str, Dict[str, Any]] = {}
        for group, name, label in labels:
            output.setdefault(group, {})[name] = row[label]
        return output

    async def create(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        values = self._check_data(data)
        stmt = insert(self.table).values(**values).returning(*self.table.c)
        result = await self._run("create", stmt)
        return dict(result.mappings().one())

    async def update(self, where: Where, data: Mapping[str, Any]) -> Dict[str, Any]:
        values = self._check_data(data)
        pk = self._primary_key()
        match = await self.find_unique(where)
        if match is None:
            raise NotFoundError(f"{self.name} not found", details={"where": _loggable(where)})
        stmt = update(self.table).where(pk == match[pk.name]).values(**values).returning(*self.table.c)
        result = await self._run("update", stmt)
        return dict(result.mappings().one())

    async def update_many(self, where: Optional[Where], data: Mapping[str, Any]) -> int:
        values = self._check_data(data)
        stmt = update(self.table).where(*compile_where(self.table, where)).values(**values)
        result = await self._run("update_many", stmt)
        return result.rowcount

    async def delete(self, where: Where) -> Dict[str, Any]:
        pk = self._primary_key()
        match = await self.find_unique(where)
        if match is None:
            raise NotFoundError(f"{self.name} not found", details={"where": _loggable(where)})
        await self._run("delete", delete(self.table).where(pk == match[pk.name]))
        return match

    async def delete_many(self, where: Optional[Where] = None) -> int:
        stmt = delete(self.table).where(*compile_where(self.table, where))
        result = await self._run("delete_many", stmt)
        return result.rowcount

    async def execute(self, request: QueryRequest) -> Any:
        """Run a ``QueryRequest`` against this table."""
        action = request.action
        options = request.options
        where = request.where

        if action == QueryAction.FIND_UNIQUE:
            return await self.find_unique(where or {})
        if action == QueryAction.FIND_FIRST:
            return await self.find_first(where, order_by=options.get("order_by"))
        if action == QueryAction.FIND_MANY:
            return await self.find_many(
                where,
                order_by=options.get("order_by"),
                take=options.get("take"),
                skip=options.get("skip"),
            )
        if action == QueryAction.COUNT:
            return await self.count(where)
        if action == QueryAction.AGGREGATE:
            return await self.aggregate(where, **options)
        if action == QueryAction.CREATE:
            return await self.create(request.data or {})
        if action == QueryAction.UPDATE:
            return await self.update(where or {}, request.data or {})
        if action == QueryAction.UPDATE_MANY:
            return await self.update_many(where, request.data or {})
        if action == QueryAction.DELETE:
            return await self.delete(where or {})
        if action == QueryAction.DELETE_MANY:
            return await self.delete_many(where)
        raise ValidationError(f"Unsupported action '{action}'")


def _loggable(where: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in (where or {}).items():
        if isinstance(value, Mapping):
            result[key] = _loggable(value)
        else:
            result[key] = repr(value) if value is UNSET else value
    return result


class DataAccess:
    """Entry point handing out ``ModelDelegate``s by entity name."""

    def __init__(self, engine: AsyncEngine, models: Optional[Mapping[str, Any]] = None) -> None:
        self.engine = engine
        self._tables: Dict[str, Table] = {
            name: model.__table__ for name, model in (models or MODELS).items()
        }
        self._by_lower = {name.lower(): name for name in self._tables}

    def resolve_name(self, name: str) -> str:
        key = name.replace("_", "").lower()
        if key not in self._by_lower:
            raise ValidationError(f"Unknown model '{name}'", code=ErrorCode.INVALID_INPUT)
        return self._by_lower[key]

    def model(self, name: str) -> ModelDelegate:
        canonical = self.resolve_name(name)
        return ModelDelegate(self.engine, canonical, self._tables[canonical])

    async def execute(self, request: QueryRequest) -> Any:
        return await self.model(request.model).execute(request)
