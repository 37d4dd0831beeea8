"""
Two-tier read cache — Redis when reachable, in-process TTL map otherwise.

Whether Redis is used is decided by is_backing_store_available(), an
explicit ping whose result is reused for HEALTH_CHECK_SECONDS. A failed
Redis call is logged and served from memory for that call only; it does
not disable Redis for later calls.

Values are JSON-serialized. The cache is read-through only: services
invalidate keys after they commit a write.
"""
import json
import logging
import time
from typing import Any, Callable, Optional

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

HEALTH_CHECK_SECONDS = 5.0


class TwoTierCache:
    def __init__(
        self,
        redis_url: Optional[str] = None,
        default_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.redis_url = redis_url if redis_url is not None else settings.redis_url
        self.default_ttl = default_ttl or settings.cache_ttl_seconds
        self._redis: Optional[redis.Redis] = None
        self._memory: dict[str, tuple[float, str]] = {}
        self._last_check: float = 0.0
        self._last_check_ok: bool = False

    def _client(self) -> Optional[redis.Redis]:
        if not self.redis_url:
            return None
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def is_backing_store_available(self, force: bool = False) -> bool:
        """Ping Redis (result reused for HEALTH_CHECK_SECONDS unless force=True)."""
        client = self._client()
        if client is None:
            return False

        now = self._clock()
        if not force and now - self._last_check < HEALTH_CHECK_SECONDS:
            return self._last_check_ok

        try:
            ok = bool(await client.ping())
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis unavailable, using in-memory cache: {e}")
            ok = False

        self._last_check = now
        self._last_check_ok = ok
        return ok

    # ── Memory tier ─────────────────────────────────────────────────

    def _memory_get(self, key: str) -> Optional[str]:
        entry = self._memory.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at < self._clock():
            self._memory.pop(key, None)
            return None
        return raw

    def _memory_set(self, key: str, raw: str, ttl: int) -> None:
        self._memory[key] = (self._clock() + ttl, raw)

    # ── Public API ──────────────────────────────────────────────────

    async def get(self, key: str) -> Any:
        raw = None
        if await self.is_backing_store_available():
            try:
                raw = await self._client().get(key)
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Redis GET {key} failed, reading memory tier: {e}")
                raw = self._memory_get(key)
        else:
            raw = self._memory_get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = ttl or self.default_ttl
        raw = json.dumps(value, default=str)
        if await self.is_backing_store_available():
            try:
                await self._client().set(key, raw, ex=ttl)
                return
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Redis SET {key} failed, writing memory tier: {e}")
        self._memory_set(key, raw, ttl)

    async def delete(self, key: str) -> None:
        # Both tiers: an earlier call may have fallen back to memory
        self._memory.pop(key, None)
        if await self.is_backing_store_available():
            try:
                await self._client().delete(key)
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Redis DEL {key} failed: {e}")

    def clear_memory(self) -> None:
        self._memory.clear()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def get_status(self) -> dict:
        return {
            "backingStoreConfigured": bool(self.redis_url),
            "backingStoreAvailable": self._last_check_ok,
            "memoryEntries": len(self._memory),
        }


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


cache = TwoTierCache()


# Session.info key holding cache keys to drop once the session commits
STALE_KEYS = "stale_cache_keys"


def mark_order_changed(db, order_id: int) -> None:
    """Queue an order's cached view for invalidation after the session commits."""
    db.info.setdefault(STALE_KEYS, set()).add(order_key(order_id))


async def invalidate_committed(db) -> int:
    """Drop every key marked on this session. Call right after commit."""
    keys = db.info.pop(STALE_KEYS, set())
    for key in sorted(keys):
        await cache.delete(key)
    return len(keys)
