"""
Two-level cache: a process-local TTL map in front of Redis.

Lookup order is local -> Redis -> fetch function. Redis is treated as
unreliable: every call to it is wrapped so that an outage, a failed command
or an undecodable value degrades to a miss (or a skipped write) and is logged,
never raised to the caller. The local tier is a best-effort accelerator and
is never authoritative.
"""

import asyncio
import base64
import functools
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar, Union

import structlog
from redis.asyncio import Redis
from redis.exceptions import DataError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Raised for a bad stored value, not a bad connection
DECODE_ERRORS = (UnicodeDecodeError, DataError)

MISSING: Any = object()


@dataclass
class CacheOptions:
    """Per-call cache options; unset TTLs fall back to the cache defaults."""

    memory_ttl: Optional[float] = None
    redis_ttl: Optional[float] = None
    skip_memory: bool = False
    skip_redis: bool = False


@dataclass
class _Entry:
    expires_at: float
    value: Any


class LocalCache:
    """
    Process-local TTL cache.

    No cross-worker coherence. When it grows past ``max_items`` it is cleared
    outright rather than evicting selectively.
    """

    def __init__(
        self,
        default_ttl: float = 300,
        max_items: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.max_items = max_items
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = MISSING) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            self.misses += 1
            return default
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        if key not in self._entries and len(self._entries) >= self.max_items:
            self._entries.clear()
        self._entries[key] = _Entry(expires_at=self._clock() + ttl, value=value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def flush_all(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        now = self._clock()
        return [key for key, entry in self._entries.items() if entry.expires_at > now]

    def stats(self) -> Dict[str, int]:
        return {"keys": len(self.keys()), "hits": self.hits, "misses": self.misses}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def retry_delay(attempt: int) -> float:
    """Backoff between reconnect attempts, capped at two seconds."""
    return min(attempt * 0.05, 2.0)


class RedisStore:
    """
    Redis tier with explicit connection state.

    Reconnects are attempted lazily from the hot path but guarded by a
    cooldown so an outage does not turn into a connection storm. After
    ``max_retries`` consecutive failures automatic reconnection stops until
    ``reset_retries()`` is called.
    """

    def __init__(
        self,
        client: Redis,
        reconnect_cooldown: float = 5.0,
        max_retries: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.reconnect_cooldown = reconnect_cooldown
        self.max_retries = max_retries
        self._clock = clock
        self.state = ConnectionState.DISCONNECTED
        self.failed_attempts = 0
        self.last_error: Optional[str] = None
        self._next_attempt_at: Optional[float] = None
        self._reconnect_task: Optional["asyncio.Task[bool]"] = None

    @classmethod
    def from_url(
        cls,
        url: str,
        socket_timeout: float = 5.0,
        connect_timeout: float = 10.0,
        **kwargs: Any,
    ) -> "RedisStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=connect_timeout,
            health_check_interval=30,
        )
        return cls(client, **kwargs)

    @property
    def available(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def gave_up(self) -> bool:
        return self.failed_attempts >= self.max_retries

    async def connect(self) -> bool:
        """Make one connection attempt, respecting cooldown and the retry cap."""
        if self.state == ConnectionState.CONNECTED:
            return True
        if self.state == ConnectionState.CONNECTING:
            logger.warning("Redis connection already in progress")
            return False
        if self.gave_up:
            logger.error(
                "Redis reconnection disabled after repeated failures",
                attempts=self.failed_attempts,
            )
            return False

        now = self._clock()
        if self._next_attempt_at is not None and now < self._next_attempt_at:
            logger.warning(
                "Redis reconnection cooldown active",
                cooldown_remaining=round(self._next_attempt_at - now, 3),
            )
            return False

        self.state = ConnectionState.CONNECTING
        try:
            await self.client.ping()
        except Exception as e:
            self.failed_attempts += 1
            self.state = ConnectionState.DISCONNECTED
            self.last_error = str(e)
            delay = max(self.reconnect_cooldown, retry_delay(self.failed_attempts))
            self._next_attempt_at = self._clock() + delay
            if self.gave_up:
                logger.error(
                    "Redis max retry attempts reached, giving up",
                    attempts=self.failed_attempts,
                    error=str(e),
                )
            else:
                logger.warning(
                    "Redis connection attempt failed",
                    attempt=self.failed_attempts,
                    retry_in_seconds=delay,
                    error=str(e),
                )
            return False

        self.state = ConnectionState.CONNECTED
        self.failed_attempts = 0
        self.last_error = None
        self._next_attempt_at = None
        logger.info("Redis connection established")
        return True

    def reset_retries(self) -> None:
        """Re-arm automatic reconnection after the retry cap was hit."""
        self.failed_attempts = 0
        self._next_attempt_at = None
        logger.info("Redis reconnection re-armed")

    def mark_disconnected(self, error: BaseException) -> None:
        if self.state == ConnectionState.CONNECTED:
            logger.warning("Redis connection lost", error=str(error))
        self.state = ConnectionState.DISCONNECTED
        self.last_error = str(error)
        if self._next_attempt_at is None:
            self._next_attempt_at = self._clock() + self.reconnect_cooldown

    def schedule_reconnect(self) -> None:
        """Kick off a background reconnect unless one is running or we gave up."""
        if self.available or self.gave_up:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self._next_attempt_at is not None and self._clock() < self._next_attempt_at:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        logger.info("Redis reconnecting")
        self._reconnect_task = loop.create_task(self.connect())

    async def _call(self, op: Callable[[], Awaitable[T]]) -> T:
        try:
            return await op()
        except DECODE_ERRORS:
            raise
        except Exception as e:
            self.mark_disconnected(e)
            raise

    async def get(self, key: str) -> Optional[str]:
        return await self._call(lambda: self.client.get(key))

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        """Write ``value``; a non-positive ``ttl`` skips the write like the local tier."""
        if ttl is not None and ttl <= 0:
            return
        if ttl is not None:
            await self._call(lambda: self.client.set(key, value, ex=max(1, int(ttl))))
        else:
            await self._call(lambda: self.client.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call(lambda: self.client.delete(*keys))

    async def keys(self, pattern: str) -> List[str]:
        async def scan() -> List[str]:
            return [key async for key in self.client.scan_iter(match=pattern)]

        return await self._call(scan)

    async def ping(self) -> Dict[str, Any]:
        """Round-trip probe used by the health endpoint."""
        start = time.perf_counter()
        try:
            await self.client.ping()
        except Exception as e:
            self.mark_disconnected(e)
            return {"healthy": False, "status": self.state.value, "error": str(e)}
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        if self.state != ConnectionState.CONNECTED:
            self.state = ConnectionState.CONNECTED
            self.failed_attempts = 0
            self._next_attempt_at = None
            logger.info("Redis connection established")
        return {"healthy": True, "status": self.state.value, "latency_ms": latency_ms}

    async def close(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        try:
            await self.client.aclose()
        finally:
            self.state = ConnectionState.DISCONNECTED
            logger.info("Redis connection closed")


class TieredCache:
    """
    Local + Redis cache with fetch-through.

    A ``None`` store runs the cache in local-only mode.
    """

    def __init__(
        self,
        local: LocalCache,
        store: Optional[RedisStore] = None,
        memory_ttl: float = 300,
        redis_ttl: float = 3600,
        metrics: Any = None,
    ) -> None:
        self.local = local
        self.store = store
        self.memory_ttl = memory_ttl
        self.redis_ttl = redis_ttl
        self.metrics = metrics
        self._pending: Set["asyncio.Task[None]"] = set()
        self._queued: Dict[str, object] = {}

    def _resolve(self, options: Optional[CacheOptions]) -> CacheOptions:
        opts = options or CacheOptions()
        return CacheOptions(
            memory_ttl=self.memory_ttl if opts.memory_ttl is None else opts.memory_ttl,
            redis_ttl=self.redis_ttl if opts.redis_ttl is None else opts.redis_ttl,
            skip_memory=opts.skip_memory,
            skip_redis=opts.skip_redis,
        )

    def _redis_usable(self, opts: CacheOptions) -> bool:
        if opts.skip_redis or self.store is None:
            return False
        if not self.store.available:
            self.store.schedule_reconnect()
            return False
        return True

    def _record(self, tier: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_cache(tier, outcome)

    async def get(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        options: Optional[CacheOptions] = None,
    ) -> T:
        opts = self._resolve(options)

        if not opts.skip_memory:
            value = self.local.get(key)
            if value is not MISSING:
                self._record("memory", "hit")
                return value
            self._record("memory", "miss")

        if self._redis_usable(opts):
            found, value = await self._redis_lookup(key)
            if found:
                self._record("redis", "hit")
                if not opts.skip_memory:
                    self._backfill(key, value, opts)
                return value
            self._record("redis", "miss")

        fresh = await fetch()

        if not opts.skip_memory:
            self._backfill(key, fresh, opts)
        if self._redis_usable(opts):
            self._queue_write(key, fresh, opts.redis_ttl)

        return fresh

    async def _redis_lookup(self, key: str) -> "tuple[bool, Any]":
        assert self.store is not None
        try:
            raw = await self.store.get(key)
            if raw is None:
                return False, None
            return True, json.loads(raw)
        except (TypeError, ValueError) + DECODE_ERRORS:
            logger.warning("Redis cache value parse failed, invalidating", key=key)
            try:
                await self.store.delete(key)
            except Exception as e:
                logger.warning("Failed to delete corrupted cache entry", key=key, error=str(e))
            return False, None
        except Exception as e:
            self._record("redis", "error")
            logger.warning("Redis get failed, falling back to fetch", key=key, error=str(e))
            return False, None

    def _backfill(self, key: str, value: Any, opts: CacheOptions) -> None:
        try:
            self.local.set(key, value, opts.memory_ttl)
        except Exception as e:
            logger.warning("Memory cache set failed", key=key, error=str(e))

    async def _redis_write(self, key: str, value: Any, ttl: Optional[float]) -> None:
        assert self.store is not None
        try:
            await self.store.set(key, json.dumps(value, default=str), ttl)
        except Exception as e:
            self._record("redis", "error")
            logger.warning("Redis cache set failed", key=key, error=str(e))

    def _queue_write(self, key: str, value: Any, ttl: Optional[float]) -> None:
        # A queued write is dropped if set/delete touches the key before it runs
        marker = object()
        self._queued[key] = marker

        async def write() -> None:
            if self._queued.get(key) is not marker:
                return
            del self._queued[key]
            await self._redis_write(key, value, ttl)

        task = asyncio.ensure_future(write())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def set(self, key: str, value: Any, options: Optional[CacheOptions] = None) -> None:
        opts = self._resolve(options)
        self._queued.pop(key, None)
        if not opts.skip_memory:
            self._backfill(key, value, opts)
        if self._redis_usable(opts):
            await self._redis_write(key, value, opts.redis_ttl)

    async def delete(self, key: str) -> None:
        self.local.delete(key)
        self._queued.pop(key, None)
        if self._redis_usable(CacheOptions()):
            assert self.store is not None
            try:
                await self.store.delete(key)
            except Exception as e:
                logger.warning("Redis delete failed", key=key, error=str(e))

    async def invalidate(self, pattern: str) -> None:
        """Flush the whole local tier and delete Redis keys matching ``pattern``."""
        self.local.flush_all()
        self._queued.clear()
        if not self._redis_usable(CacheOptions()):
            return
        assert self.store is not None
        try:
            keys = await self.store.keys(pattern)
            if keys:
                await self.store.delete(*keys)
                logger.info("Invalidated Redis keys", pattern=pattern, count=len(keys))
        except Exception as e:
            logger.warning("Redis invalidate failed", pattern=pattern, error=str(e))

    async def warm(self, entries: Iterable[Dict[str, Any]]) -> None:
        """Preload entries of the form ``{"key", "value", "options"?}``."""
        await asyncio.gather(
            *(self.set(entry["key"], entry["value"], entry.get("options")) for entry in entries)
        )

    def stats(self) -> Dict[str, Any]:
        redis_stats: Dict[str, Any] = {"configured": self.store is not None}
        if self.store is not None:
            redis_stats.update(
                status=self.store.state.value,
                available=self.store.available,
                failed_attempts=self.store.failed_attempts,
            )
        return {"memory": self.local.stats(), "redis": redis_stats}

    async def check_health(self) -> Dict[str, Any]:
        if self.store is None:
            redis_health: Dict[str, Any] = {"healthy": False, "status": "not_configured"}
        else:
            redis_health = await self.store.ping()
        return {"memory": {"healthy": True}, "redis": redis_health}

    def cached(
        self,
        key: Union[str, Callable[..., str]],
        options: Optional[CacheOptions] = None,
    ) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
        """Decorate an async function so its result is served through ``get``."""

        def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
            @functools.wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> T:
                cache_key = key(*args, **kwargs) if callable(key) else key
                called = False

                async def fetch() -> T:
                    nonlocal called
                    called = True
                    return await func(*args, **kwargs)

                try:
                    return await self.get(cache_key, fetch, options)
                except Exception as e:
                    if called:
                        raise
                    logger.error("Cache wrapper error", key=cache_key, error=str(e))
                    return await func(*args, **kwargs)

            return wrapper

        return decorator

    async def close(self) -> None:
        await self.drain()
        self.local.flush_all()
        if self.store is not None:
            try:
                await self.store.close()
            except Exception as e:
                logger.error("Failed to close Redis connection", error=str(e))


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class CacheKeys:
    """Standard cache key builders."""

    @staticmethod
    def user(user_id: Any, resource: str) -> str:
        return f"user:{user_id}:{resource}"

    @staticmethod
    def product(product_id: Any) -> str:
        return f"product:{product_id}"

    @staticmethod
    def search(query: str, filters: Dict[str, Any]) -> str:
        return f"search:{_b64(query + json.dumps(filters, sort_keys=True, default=str))}"

    @staticmethod
    def analytics(kind: str, period: str, user_id: Optional[Any] = None) -> str:
        base = f"analytics:{kind}:{period}"
        return f"{base}:{user_id}" if user_id is not None else base

    @staticmethod
    def api(endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        suffix = f":{_b64(json.dumps(params, sort_keys=True, default=str))}" if params else ""
        return f"api:{endpoint}{suffix}"
