"""
Async database engine lifecycle.
"""

import time
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..models.entities import Base

logger = structlog.get_logger(__name__)


class Database:
    """Owns the async engine; built once by the application lifespan."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        kwargs: Dict[str, Any] = {"echo": echo, "future": True}
        if not make_url(url).drivername.startswith("sqlite"):
            kwargs.update(pool_pre_ping=True, pool_recycle=1800)
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)

    @property
    def masked_url(self) -> str:
        return make_url(self.url).render_as_string(hide_password=True)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured", url=self.masked_url)

    async def ping(self) -> Dict[str, Any]:
        """Run ``SELECT 1`` and report latency."""
        start = time.perf_counter()
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"healthy": False, "error": str(e)}
        return {"healthy": True, "latency_ms": round((time.perf_counter() - start) * 1000, 2)}

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")
