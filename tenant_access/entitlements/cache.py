"""
Override Cache - short-TTL read cache in front of the override store.

Provides:
- RedisClient: Redis wrapper that degrades to "unavailable" instead of raising
- InMemoryCache: thread-safe TTL cache used when Redis is not configured
- OverrideCache: per-(tenant, feature) cache of override lookups

Only override reads are cached. Access decisions are NOT cached: they depend
on trial/subscription boundaries and must be recomputed on every call.

CRITICAL: Every override write MUST invalidate the cached key.
"""

import fnmatch
import logging
import os
from collections import OrderedDict
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Optional, Tuple

import redis

from tenant_access.entitlements.models import FeatureOverride

logger = logging.getLogger(__name__)

# Cache configuration
DEFAULT_OVERRIDE_CACHE_TTL_SECONDS = 5

# Stored for "no override" so misses are cached too
_NO_OVERRIDE = "__none__"


class RedisClient:
    """
    Redis connection shared by the override cache.

    A missing REDIS_URL or a failed ping leaves the client unavailable.
    Command failures are logged and reported as a miss; they never reach
    the access engine.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self._redis: Optional[redis.Redis] = None
        url = redis_url if redis_url is not None else os.getenv("REDIS_URL")
        if not url:
            logger.info("REDIS_URL not configured - override cache is in-memory only")
            return

        try:
            conn = redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=1.0,
                socket_connect_timeout=1.0,
            )
            conn.ping()
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e} - using in-memory cache")
            return

        self._redis = conn
        logger.info("Redis connection established for override cache")

    @property
    def available(self) -> bool:
        return self._redis is not None

    def _run(self, command: str, default: Any, *args) -> Any:
        if self._redis is None:
            return default
        try:
            return getattr(self._redis, command)(*args)
        except redis.RedisError as e:
            logger.warning(f"Redis {command.upper()} failed: {e}")
            return default

    def get(self, key: str) -> Optional[str]:
        return self._run("get", None, key)

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self._run("setex", False, key, ttl_seconds, value))

    def delete(self, key: str) -> int:
        return self._run("delete", 0, key)

    def delete_pattern(self, pattern: str) -> int:
        if self._redis is None:
            return 0
        try:
            keys = list(self._redis.scan_iter(match=pattern))
            return self._redis.delete(*keys) if keys else 0
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE pattern failed: {e}")
            return 0


class InMemoryCache:
    """
    Process-local TTL cache.

    Entries are kept in write order, so the oldest entry is evicted first
    once max_size is reached.
    """

    def __init__(
        self,
        max_size: int = 10000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._entries: "OrderedDict[str, Tuple[str, datetime]]" = OrderedDict()
        self._lock = Lock()
        self._max_size = max_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, key: str, ttl_seconds: int) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, cached_at = entry
            if (self._clock() - cached_at).total_seconds() >= ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (value, self._clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [k for k in self._entries if fnmatch.fnmatch(k, pattern)]
            for key in matched:
                del self._entries[key]
            return len(matched)


class OverrideCache:
    """
    Cache of override lookups keyed by (tenant_id, feature).

    Both hits and "no override" results are cached. Redis is used when it
    is available so every process sees an invalidation at once; otherwise
    entries live in the process-local cache.

    Usage:
        found, override = cache.get(tenant_id, feature)
        if not found:
            override = store.get(tenant_id, feature)
            cache.set(tenant_id, feature, override)

        # after any write
        cache.invalidate(tenant_id, feature)
    """

    CACHE_KEY_PREFIX = "override:"

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        memory_cache: Optional[InMemoryCache] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self._redis = redis_client or RedisClient()
        self._memory_cache = memory_cache or InMemoryCache()
        if ttl_seconds is None:
            ttl_seconds = int(
                os.getenv("OVERRIDE_CACHE_TTL_SECONDS", DEFAULT_OVERRIDE_CACHE_TTL_SECONDS)
            )
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _cache_key(self, tenant_id: str, feature: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{tenant_id}:{feature}"

    @staticmethod
    def _decode(data: str) -> Optional[FeatureOverride]:
        if data == _NO_OVERRIDE:
            return None
        return FeatureOverride.from_json(data)

    def get(self, tenant_id: str, feature: str) -> Tuple[bool, Optional[FeatureOverride]]:
        """
        Look up a cached override.

        Returns (found, override). found=False is a cache miss; found=True
        with override=None means "cached: no override for this key".
        """
        if self._ttl_seconds <= 0:
            return False, None

        key = self._cache_key(tenant_id, feature)
        if self._redis.available:
            data = self._redis.get(key)
        else:
            data = self._memory_cache.get(key, self._ttl_seconds)
        if data is None:
            return False, None

        try:
            return True, self._decode(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(
                f"Discarding undecodable cached override: {e}",
                extra={"tenant_id": tenant_id, "feature": feature},
            )
            self.invalidate(tenant_id, feature)
            return False, None

    def set(self, tenant_id: str, feature: str, override: Optional[FeatureOverride]) -> None:
        if self._ttl_seconds <= 0:
            return
        key = self._cache_key(tenant_id, feature)
        data = override.to_json() if override is not None else _NO_OVERRIDE

        if self._redis.available:
            self._redis.set(key, data, self._ttl_seconds)
        else:
            self._memory_cache.set(key, data)

    def invalidate(self, tenant_id: str, feature: str) -> None:
        key = self._cache_key(tenant_id, feature)
        if self._redis.available:
            self._redis.delete(key)
        self._memory_cache.delete(key)
        logger.debug(
            "Invalidated override cache",
            extra={"tenant_id": tenant_id, "feature": feature},
        )

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """Drop every cached override. Used after bulk expiry cleanup."""
        pattern = f"{self.CACHE_KEY_PREFIX}*"
        count = 0
        if self._redis.available:
            count = self._redis.delete_pattern(pattern)
        count += self._memory_cache.delete_pattern(pattern)

        logger.info(
            f"Invalidated override cache ({count} entries)",
            extra={"reason": reason},
        )
        return count
