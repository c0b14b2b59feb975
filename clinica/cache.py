"""
Availability cache: time-bounded memoisation of doctor and branch availability
Backed by Redis when a client is injected, by an in-process dict otherwise
"""

import json
import logging
import time
from threading import Lock
from typing import Any, Callable, Literal, Optional

import redis

logger = logging.getLogger(__name__)

Scope = Literal["doctor", "branch"]

KEY_PREFIX = "schedule"
MEMORY_CACHE_CLEANUP_INTERVAL = 60  # Sweep expired in-memory entries at most once a minute
SCOPE_SEGMENTS = {"doctor": "availability", "branch": "branch"}


def build_key(scope: Scope, owner_id: str, day) -> str:
    """schedule:availability:<doctor>:<date> or schedule:branch:<branch>:<date>"""
    return f"{KEY_PREFIX}:{SCOPE_SEGMENTS[scope]}:{owner_id}:{day}"


class AvailabilityCache:
    """
    Advisory cache of computed availability.

    Entries expire after their TTL and are dropped explicitly by the scheduling
    writes. Every backend failure is logged and reported as a miss, so the
    scheduler stays correct with the cache down or disabled.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        default_ttl: int = 300,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {default_ttl}")
        self.redis_client = redis_client
        self.default_ttl = default_ttl
        self.enabled = enabled
        self._clock = clock
        # key -> (expires_at, serialized value)
        self._memory: dict[str, tuple[float, str]] = {}
        self._memory_lock = Lock()
        self._last_cleanup = clock()
        self.hits = 0
        self.misses = 0

    @property
    def backend(self) -> str:
        if not self.enabled:
            return "disabled"
        return "redis" if self.redis_client is not None else "memory"

    def get(self, scope: Scope, owner_id: str, day) -> Optional[Any]:
        if not self.enabled:
            return None

        key = build_key(scope, owner_id, day)
        raw = self._read(key)
        if raw is None:
            self.misses += 1
            logger.debug(f"❌ Cache MISS: {key}")
            return None

        try:
            value = json.loads(raw)
        except ValueError as e:
            logger.error(f"❌ Corrupt cache entry for {key}: {e}")
            self.invalidate(scope, owner_id, day)
            self.misses += 1
            return None

        self.hits += 1
        logger.debug(f"✅ Cache HIT: {key}")
        return value

    def put(self, scope: Scope, owner_id: str, day, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled:
            return False

        key = build_key(scope, owner_id, day)
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")
        serialized = json.dumps(value)

        if self.redis_client is None:
            with self._memory_lock:
                self._cleanup_expired()
                self._memory[key] = (self._clock() + ttl, serialized)
            logger.debug(f"✅ Cache SET: {key} (TTL: {ttl}s)")
            return True

        try:
            self.redis_client.setex(key, ttl, serialized)
            logger.debug(f"✅ Cache SET: {key} (TTL: {ttl}s)")
            return True
        except redis.RedisError as e:
            logger.error(f"❌ Cache set error for {key}: {e}")
            return False

    def invalidate(self, scope: Scope, owner_id: str, day) -> bool:
        if not self.enabled:
            return False

        key = build_key(scope, owner_id, day)
        if self.redis_client is None:
            with self._memory_lock:
                self._memory.pop(key, None)
            logger.debug(f"✅ Cache DELETE: {key}")
            return True

        try:
            self.redis_client.delete(key)
            logger.debug(f"✅ Cache DELETE: {key}")
            return True
        except redis.RedisError as e:
            # Entry stays stale until its TTL runs out
            logger.error(f"❌ Cache delete error for {key}: {e}")
            return False

    def invalidate_scope_for_date(self, scope: Scope, day) -> int:
        """Drop every entry of one scope for one date, e.g. all branch views of a day"""
        if not self.enabled:
            return 0
        return self._delete_pattern(build_key(scope, "*", day))

    def clear(self) -> int:
        """Drop every availability entry"""
        return self._delete_pattern(f"{KEY_PREFIX}:*")

    def stats(self) -> dict:
        stats = {"backend": self.backend, "hits": self.hits, "misses": self.misses}
        if self.backend == "memory":
            with self._memory_lock:
                stats["entries"] = len(self._memory)
        return stats

    def _cleanup_expired(self) -> None:
        """Remove expired entries from the memory fallback; caller holds _memory_lock"""
        now = self._clock()
        if now - self._last_cleanup < MEMORY_CACHE_CLEANUP_INTERVAL:
            return

        expired_keys = [k for k, (expires_at, _) in self._memory.items() if now >= expires_at]
        for k in expired_keys:
            del self._memory[k]
        if expired_keys:
            logger.debug(f"🧹 Cleaned up {len(expired_keys)} expired availability entries")
        self._last_cleanup = now

    def _read(self, key: str) -> Optional[str]:
        if self.redis_client is None:
            with self._memory_lock:
                entry = self._memory.get(key)
                if entry is None:
                    return None
                expires_at, serialized = entry
                if self._clock() >= expires_at:
                    del self._memory[key]
                    return None
                return serialized

        try:
            return self.redis_client.get(key)
        except redis.RedisError as e:
            logger.error(f"❌ Cache get error for {key}: {e}")
            return None

    def _delete_pattern(self, pattern: str) -> int:
        if self.redis_client is None:
            prefix, _, suffix = pattern.partition("*")
            with self._memory_lock:
                keys = [
                    k for k in self._memory
                    if k.startswith(prefix) and k.endswith(suffix) and len(k) >= len(prefix) + len(suffix)
                ]
                for k in keys:
                    del self._memory[k]
            return len(keys)

        try:
            keys = list(self.redis_client.scan_iter(match=pattern))
            if not keys:
                return 0
            deleted = self.redis_client.delete(*keys)
            logger.debug(f"✅ Cache DELETE pattern: {pattern} ({deleted} keys)")
            return deleted
        except redis.RedisError as e:
            logger.error(f"❌ Cache delete pattern error for {pattern}: {e}")
            return 0
