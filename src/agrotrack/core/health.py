"""
Health checker for the service's dependencies.

Checks:
- Database reachability (SELECT 1)
- Cache tiers (Redis ping, local tier always up)
- Process memory against the configured budget
"""

import asyncio
import resource
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from .cache import TieredCache
from .db import Database

logger = structlog.get_logger(__name__)


@dataclass
class ServiceCheck:
    """Individual dependency check result."""
    status: str  # "up", "down", "degraded"
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryCheck:
    status: str
    used_mb: float
    total_mb: float
    percentage: int


@dataclass
class HealthReport:
    """Overall health status."""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    version: str
    environment: str
    response_time_ms: float
    checks: Dict[str, Any]

    @property
    def http_status(self) -> int:
        return 503 if self.status == "unhealthy" else 200

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def process_memory_mb() -> float:
    """Resident set size high-water mark of this process in MB."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return usage / divisor


class HealthChecker:
    """
    Aggregates dependency checks into a single report.

    Database down or memory critical makes the service unhealthy. A cache
    with no working tier, or database/memory short of "up", makes it degraded.
    """

    def __init__(
        self,
        database: Optional[Database],
        cache: Optional[TieredCache],
        version: str = "1.0.0",
        environment: str = "development",
        memory_limit_mb: int = 1024,
        memory_degraded_percent: int = 75,
        memory_critical_percent: int = 90,
        memory_probe: Callable[[], float] = process_memory_mb,
    ) -> None:
        self.database = database
        self.cache = cache
        self.version = version
        self.environment = environment
        self.memory_limit_mb = memory_limit_mb
        self.memory_degraded_percent = memory_degraded_percent
        self.memory_critical_percent = memory_critical_percent
        self.memory_probe = memory_probe
        self._started = time.monotonic()

        logger.info("Health Checker initialized")

    async def check_all(self) -> HealthReport:
        start = time.perf_counter()

        results = await asyncio.gather(
            self._check_database(),
            self._check_cache(),
            return_exceptions=True,
        )
        database_check, cache_check = (
            result if isinstance(result, ServiceCheck) else ServiceCheck(status="down", error=str(result))
            for result in results
        )
        memory_check = self._check_memory()

        critical_down = database_check.status == "down" or memory_check.status == "down"
        all_good = (
            database_check.status == "up"
            and memory_check.status == "up"
            and cache_check.status != "down"
        )
        if critical_down:
            status = "unhealthy"
        elif not all_good:
            status = "degraded"
        else:
            status = "healthy"

        return HealthReport(
            status=status,
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=self.version,
            environment=self.environment,
            response_time_ms=round((time.perf_counter() - start) * 1000, 2),
            checks={
                "database": asdict(database_check),
                "cache": asdict(cache_check),
                "memory": asdict(memory_check),
                "uptime": round(time.monotonic() - self._started),
            },
        )

    async def _check_database(self) -> ServiceCheck:
        if self.database is None:
            return ServiceCheck(status="down", error="Database not configured")
        result = await self.database.ping()
        if result.get("healthy"):
            return ServiceCheck(status="up", response_time_ms=result.get("latency_ms"))
        return ServiceCheck(status="down", error=result.get("error", "Unknown database error"))

    async def _check_cache(self) -> ServiceCheck:
        if self.cache is None:
            return ServiceCheck(status="down", error="Cache service unavailable")

        health = await self.cache.check_health()
        redis = health["redis"]
        memory = health["memory"]

        if redis.get("healthy"):
            return ServiceCheck(
                status="up",
                response_time_ms=redis.get("latency_ms"),
                details={"redis": {"status": redis.get("status"), "latency_ms": redis.get("latency_ms")}, "memory": memory},
            )
        if memory.get("healthy"):
            logger.warning(
                "Redis is down, using memory cache only",
                redis_status=redis.get("status"),
                error=redis.get("error"),
            )
            return ServiceCheck(
                status="degraded",
                error=redis.get("error"),
                details={"redis": {"status": redis.get("status"), "error": redis.get("error")}, "memory": memory},
            )
        logger.error("Cache health check failed: both tiers unavailable")
        return ServiceCheck(status="down", error="Cache service unavailable")

    def _check_memory(self) -> MemoryCheck:
        used = self.memory_probe()
        percentage = round(used / self.memory_limit_mb * 100) if self.memory_limit_mb else 0

        status = "up"
        if percentage >= self.memory_critical_percent:
            status = "down"
            logger.error("Critical memory usage", percentage=percentage, used_mb=round(used, 1))
        elif percentage >= self.memory_degraded_percent:
            status = "degraded"
            logger.warning("High memory usage", percentage=percentage, used_mb=round(used, 1))

        return MemoryCheck(
            status=status,
            used_mb=round(used, 1),
            total_mb=float(self.memory_limit_mb),
            percentage=percentage,
        )
