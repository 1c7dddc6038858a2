from __future__ import annotations

import json
import hashlib
import asyncio
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

from redis.asyncio import Redis, ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

import structlog
from civicwatch.config import settings
from civicwatch.database import SessionLocal
from civicwatch.exceptions import CacheError

log = structlog.get_logger(__name__)

_pool: Optional[ConnectionPool] = None

KEY_PREFIX = "cw:v1"


# ── Pool lifecycle ────────────────────────────────────────────────────────────

async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", pool_size=settings.REDIS_POOL_SIZE)


async def close_redis_pool() -> None:
    global _pool
    if _pool:
        await _pool.aclose()
        _pool = None
        log.info("redis.pool.closed")


def get_redis() -> Redis:
    if _pool is None:
        raise CacheError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


async def ping_redis() -> bool:
    try:
        return await get_redis().ping()
    except (CacheError, RedisError, OSError):
        return False


# ── Key builders ──────────────────────────────────────────────────────────────

def build_key(*parts: Any) -> str:
    raw = ":".join(str(p) for p in parts)
    digest = hashlib.sha256(raw.encode()).hexdigest()[:12]
    slug = raw[:60].replace(" ", "_")
    return f"{KEY_PREFIX}:{digest}:{slug}"


def records_key(kind: str, *parts: Any) -> str:
    return build_key("records", kind, *parts)


def records_pattern(kind: str) -> str:
    return f"{KEY_PREFIX}:*:records:{kind}*"


# ── Stale-while-revalidate primitives ────────────────────────────────────────
#
# Two keys per logical entry:
#   <key>         → the payload, kept CACHE_STALE_GRACE seconds past its TTL
#   <key>:fresh   → sentinel that expires after the TTL proper
#
# A hit without the sentinel is stale: serve it, then refresh in the background.

async def cache_get(key: str) -> Tuple[Optional[Any], bool]:
    """
    Returns (value, is_stale).
    value=None means total cache miss.
    is_stale=True means value exists but is beyond its primary TTL.
    """
    try:
        r = get_redis()
        pipe = r.pipeline()
        await pipe.get(key)
        await pipe.exists(f"{key}:fresh")
        value_raw, is_fresh = await pipe.execute()

        if value_raw is None:
            return None, False

        return json.loads(value_raw), not bool(is_fresh)
    except (CacheError, RedisError) as e:
        log.warning("cache.get.error", key=key, error=str(e))
        return None, False


async def cache_set(key: str, value: Any, ttl: int) -> None:
    try:
        r = get_redis()
        stale_ttl = ttl + settings.CACHE_STALE_GRACE
        serialized = json.dumps(value, default=str)
        pipe = r.pipeline()
        await pipe.setex(key, stale_ttl, serialized)
        await pipe.setex(f"{key}:fresh", ttl, "1")
        await pipe.execute()
    except (CacheError, RedisError) as e:
        log.warning("cache.set.error", key=key, error=str(e))


# ── Read-through with background revalidation ─────────────────────────────────

Loader = Callable[[AsyncSession], Awaitable[Any]]

_revalidating: Set[str] = set()
_background: Set[asyncio.Task] = set()


async def _revalidate(key: str, ttl: int, loader: Loader) -> None:
    try:
        async with SessionLocal() as db:
            value = await loader(db)
        if value is not None:
            await cache_set(key, value, ttl)
            log.info("cache.revalidated", key=key)
    except Exception as e:
        log.warning("cache.revalidate.error", key=key, error=str(e))
    finally:
        _revalidating.discard(key)


def _spawn_revalidation(key: str, ttl: int, loader: Loader) -> None:
    if key in _revalidating:
        return
    _revalidating.add(key)
    task = asyncio.create_task(_revalidate(key, ttl, loader))
    _background.add(task)
    task.add_done_callback(_background.discard)


async def get_or_load(key: str, ttl: int, loader: Loader, db: AsyncSession) -> Optional[Any]:
    """
    Cached value for ``key``, loading it with ``loader(db)`` on a miss.

    A stale hit is returned as is while a background task reloads it on its
    own session. A loader result of None is never cached.
    """
    value, is_stale = await cache_get(key)
    if value is not None and not is_stale:
        await record_hit()
        return value
    if value is not None:
        await record_hit(stale=True)
        log.info("cache.stale_hit", key=key)
        _spawn_revalidation(key, ttl, loader)
        return value

    await record_miss()
    value = await loader(db)
    if value is not None:
        await cache_set(key, value, ttl)
    return value


async def invalidate_pattern(pattern: str) -> int:
    """SCAN-based delete; KEYS would block Redis on a large keyspace."""
    try:
        r = get_redis()
        deleted = 0
        async for key in r.scan_iter(match=pattern, count=100):
            await r.delete(key)
            deleted += 1
        if deleted:
            log.info("cache.invalidated", pattern=pattern, count=deleted)
        return deleted
    except (CacheError, RedisError) as e:
        log.warning("cache.invalidate.error", pattern=pattern, error=str(e))
        return 0


async def invalidate_records(kind: str) -> None:
    """Drop every cached listing of one record kind after a crawl changed it."""
    await invalidate_pattern(records_pattern(kind))


# ── Stats ─────────────────────────────────────────────────────────────────────

_stats_lock = asyncio.Lock()
_stats = {"hits": 0, "misses": 0, "stale_hits": 0}


async def record_hit(stale: bool = False) -> None:
    async with _stats_lock:
        if stale:
            _stats["stale_hits"] += 1
        else:
            _stats["hits"] += 1


async def record_miss() -> None:
    async with _stats_lock:
        _stats["misses"] += 1


async def get_cache_stats() -> dict:
    async with _stats_lock:
        total = _stats["hits"] + _stats["misses"] + _stats["stale_hits"]
        hit_rate = round((_stats["hits"] + _stats["stale_hits"]) / total, 4) if total else 0.0
        return {**_stats, "total_requests": total, "hit_rate": hit_rate}
