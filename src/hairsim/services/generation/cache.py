"""Content-addressable cache of generated hairstyle images.

A generation is identified by the uploaded image fingerprint plus the
normalized style, color, model and gender. Identical requests reuse the
stored result instead of paying for another provider call.

Two tiers:
- Redis (when REDIS_URL is set): shared across processes, TTL handled by Redis
- Local: bounded in-process dict, TTL checked on read, batch eviction when full

The cache is a pure optimization. Every tier error is logged and reported
as a miss (get) or a failed save (put); nothing here raises to the caller.
"""

import hashlib
import json
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()

KEY_PREFIX = "hair_sim:"
DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_EVICTION_FRACTION = 0.2

# Large payloads are hashed on a head+tail sample so cost stays flat with image size
FINGERPRINT_SAMPLE_SIZE = 10_000

# Rough provider cost per generation, reporting only
ESTIMATED_COST_PER_GENERATION = 0.02


@dataclass(frozen=True)
class CacheEntry:
    key: str
    result_reference: str
    created_at: float
    expires_at: float
    style: str = ""
    color: str = ""
    model: str = ""

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CacheEntry":
        return cls(**json.loads(raw))


def _normalize(value: Optional[str], default: str = "") -> str:
    return (value or default).strip().lower()


def fingerprint(content: str | bytes) -> str:
    """Cheap, stable hash of image content for cache keys.

    Not a security hash: only the first and last FINGERPRINT_SAMPLE_SIZE
    characters are hashed once the payload exceeds twice that size.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    if len(content) > 2 * FINGERPRINT_SAMPLE_SIZE:
        content = content[:FINGERPRINT_SAMPLE_SIZE] + content[-FINGERPRINT_SAMPLE_SIZE:]
    return hashlib.md5(content, usedforsecurity=False).hexdigest()


def build_key(
    image_fingerprint: str,
    style: Optional[str],
    color: Optional[str],
    model: Optional[str],
    gender: Optional[str],
) -> str:
    """Deterministic composite key; string inputs are trimmed and lower-cased."""
    key_string = json.dumps(
        {
            "img": image_fingerprint,
            "style": _normalize(style),
            "color": _normalize(color),
            "model": _normalize(model, "replicate"),
            "gender": _normalize(gender, "male"),
        },
        sort_keys=True,
    )
    digest = hashlib.md5(key_string.encode("utf-8"), usedforsecurity=False).hexdigest()
    return f"{KEY_PREFIX}{digest}"


class GenerationCache:
    """Two-tier generation result cache with hit/miss/save counters."""

    def __init__(
        self,
        redis_client: Any = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        eviction_fraction: float = DEFAULT_EVICTION_FRACTION,
        time_fn: Callable[[], float] = time.time,
    ):
        """Initialize cache.

        Args:
            redis_client: Async Redis client (redis.asyncio.Redis) or None for local only
            max_entries: Maximum entries in the local tier
            default_ttl: Entry lifetime in seconds (default: 7 days)
            eviction_fraction: Share of oldest local entries dropped when full
            time_fn: Wall clock, injectable for tests
        """
        self._redis = redis_client
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.eviction_fraction = eviction_fraction
        self._time = time_fn

        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}

        self.hits = 0
        self.misses = 0
        self.saves = 0

    @property
    def using_redis(self) -> bool:
        return self._redis is not None

    fingerprint = staticmethod(fingerprint)
    key = staticmethod(build_key)

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Look up a cached result.

        Returns:
            CacheEntry on hit, None on miss, expiry or tier error
        """
        try:
            if self._redis is not None:
                entry = await self._redis_get(key)
            else:
                entry = self._local_get(key)
        except Exception as e:
            logger.warning(
                "cache.get_failed", key=key[:20], error=str(e), error_type=type(e).__name__
            )
            entry = None

        if entry is None:
            self.misses += 1
            return None

        self.hits += 1
        logger.info("cache.hit", key=key[:20], total_hits=self.hits)
        return entry

    async def put(
        self,
        key: str,
        result_reference: str,
        ttl: Optional[int] = None,
        style: str = "",
        color: str = "",
        model: str = "",
    ) -> bool:
        """Store a generation result under key, replacing any previous entry.

        Returns:
            True if stored, False on tier error
        """
        ttl = self.default_ttl if ttl is None else ttl
        now = self._time()
        entry = CacheEntry(
            key=key,
            result_reference=result_reference,
            created_at=now,
            expires_at=now + ttl,
            style=style,
            color=color,
            model=model,
        )

        try:
            if self._redis is not None:
                await self._redis.setex(key, max(1, int(ttl)), entry.to_json())
            else:
                self._local_put(entry)
        except Exception as e:
            logger.warning(
                "cache.put_failed", key=key[:20], error=str(e), error_type=type(e).__name__
            )
            return False

        self.saves += 1
        logger.info("cache.saved", key=key[:20], total_saves=self.saves)
        return True

    async def invalidate(self, key: str) -> bool:
        """Drop a single entry from the active tier."""
        try:
            if self._redis is not None:
                return bool(await self._redis.delete(key))
            with self._lock:
                return self._entries.pop(key, None) is not None
        except Exception as e:
            logger.warning("cache.invalidate_failed", key=key[:20], error=str(e))
            return False

    async def clear_all(self) -> None:
        """Remove every generation entry from both tiers (admin use)."""
        if self._redis is not None:
            try:
                keys = [k async for k in self._redis.scan_iter(match=f"{KEY_PREFIX}*")]
                if keys:
                    await self._redis.delete(*keys)
            except Exception as e:
                logger.warning("cache.clear_failed", error=str(e))
        with self._lock:
            self._entries.clear()
        logger.info("cache.cleared")

    def sweep_expired(self) -> int:
        """Remove expired local entries; Redis expires its own keys."""
        now = self._time()
        with self._lock:
            expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.info("cache.swept", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        hit_rate = round(self.hits / lookups * 100, 1) if lookups else 0.0
        return {
            "hits": self.hits,
            "misses": self.misses,
            "saves": self.saves,
            "hitRate": f"{hit_rate}%",
            "memoryCacheSize": len(self._entries),
            "usingRedis": self.using_redis,
            "estimatedSavings": f"${self.hits * ESTIMATED_COST_PER_GENERATION:.2f}",
        }

    async def _redis_get(self, key: str) -> Optional[CacheEntry]:
        raw = await self._redis.get(key)
        if not raw:
            return None
        return CacheEntry.from_json(raw)

    def _local_get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._time()):
                del self._entries[key]
                return None
            return entry

    def _local_put(self, entry: CacheEntry) -> None:
        with self._lock:
            if entry.key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[entry.key] = entry

    def _evict_oldest(self) -> None:
        # Caller holds the lock
        remove_count = max(1, int(self.max_entries * self.eviction_fraction))
        oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:remove_count]
        for entry in oldest:
            del self._entries[entry.key]
        logger.info("cache.evicted", removed=len(oldest), remaining=len(self._entries))
