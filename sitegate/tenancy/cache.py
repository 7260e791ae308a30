"""
Site cache — (lookup kind, lookup value) → SiteRecord with a TTL.

The cache is a best-effort accelerator in front of the datastore:
- entries older than their TTL read as absent and are dropped on that read
- concurrent fills of the same key are harmless (last writer wins)
- backend errors are logged and read as a miss, never raised
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from sitegate.config import Settings
from sitegate.models import LookupKind, SiteRecord

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class SiteCache(Protocol):
    """Interface shared by every cache backend."""

    @property
    def provider(self) -> str: ...

    async def get(self, kind: LookupKind, value: str) -> SiteRecord | None: ...

    async def put(
        self, kind: LookupKind, value: str, record: SiteRecord, ttl_seconds: int
    ) -> None: ...

    async def delete(self, kind: LookupKind, value: str) -> None: ...

    async def clear(self) -> int: ...

    async def stats(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def cache_ttl_for(kind: LookupKind, settings: Settings) -> int:
    """Subdomains change less often than custom domains."""
    if settings.is_development:
        return settings.CACHE_TTL_DEVELOPMENT
    if kind == LookupKind.SUBDOMAIN:
        return settings.CACHE_TTL_SUBDOMAIN
    return settings.CACHE_TTL_CUSTOM_DOMAIN


# ─── In-process backend ──────────────────────────────────


@dataclass
class CacheEntry:
    record: SiteRecord
    inserted_at: float
    ttl_seconds: int

    def expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl_seconds


class MemorySiteCache:
    def __init__(self, max_size: int = 1000, clock: Clock = time.monotonic) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self._entries: dict[tuple[LookupKind, str], CacheEntry] = {}
        self._max_size = max_size
        self._clock = clock
        self._hits = 0
        self._misses = 0

    @property
    def provider(self) -> str:
        return "memory"

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, kind: LookupKind, value: str) -> SiteRecord | None:
        key = (kind, value.lower())
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.expired(self._clock()):
            # pop(), not del: another request may have evicted it meanwhile
            self._entries.pop(key, None)
            self._misses += 1
            return None

        self._hits += 1
        return entry.record

    async def put(
        self, kind: LookupKind, value: str, record: SiteRecord, ttl_seconds: int
    ) -> None:
        key = (kind, value.lower())
        if key not in self._entries and len(self._entries) >= self._max_size:
            self._evict_oldest()
        self._entries[key] = CacheEntry(
            record=record, inserted_at=self._clock(), ttl_seconds=ttl_seconds
        )

    async def delete(self, kind: LookupKind, value: str) -> None:
        self._entries.pop((kind, value.lower()), None)

    async def clear(self) -> int:
        removed = len(self._entries)
        self._entries.clear()
        return removed

    def purge_expired(self) -> int:
        """Optional sweep; reads already ignore expired entries."""
        now = self._clock()
        expired = [key for key, entry in list(self._entries.items()) if entry.expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    async def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "provider": self.provider,
            "size": len(self._entries),
            "max_size": self._max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else None,
        }

    async def close(self) -> None:
        self._entries.clear()

    def _evict_oldest(self) -> None:
        """Drop the oldest 10% of entries (at least one)."""
        count = max(1, self._max_size // 10)
        oldest = sorted(self._entries.items(), key=lambda item: item[1].inserted_at)[:count]
        for key, _ in oldest:
            self._entries.pop(key, None)
        logger.debug("Site cache full, evicted %d oldest entries", len(oldest))


# ─── Redis backend ───────────────────────────────────────


class RedisSiteCache:
    """Shared cache for multi-instance deployments. Redis owns expiry."""

    def __init__(self, client: aioredis.Redis, key_prefix: str = "site:") -> None:
        self._redis = client
        self._prefix = key_prefix
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "site:") -> RedisSiteCache:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.2,
            socket_timeout=0.2,
        )
        return cls(client, key_prefix=key_prefix)

    @property
    def provider(self) -> str:
        return "redis"

    def key(self, kind: LookupKind, value: str) -> str:
        return f"{self._prefix}{kind.value}:{value.lower()}"

    async def get(self, kind: LookupKind, value: str) -> SiteRecord | None:
        key = self.key(kind, value)
        try:
            payload = await self._redis.get(key)
        except RedisError as exc:
            self._errors += 1
            logger.warning("Site cache get failed for %s: %s", key, exc)
            return None

        if payload is None:
            self._misses += 1
            return None

        try:
            record = SiteRecord.model_validate_json(payload)
        except ValidationError:
            logger.warning("Dropping undecodable site cache entry %s", key)
            await self.delete(kind, value)
            self._misses += 1
            return None

        self._hits += 1
        return record

    async def put(
        self, kind: LookupKind, value: str, record: SiteRecord, ttl_seconds: int
    ) -> None:
        key = self.key(kind, value)
        try:
            await self._redis.setex(key, ttl_seconds, record.model_dump_json())
        except RedisError as exc:
            self._errors += 1
            logger.warning("Site cache set failed for %s: %s", key, exc)

    async def delete(self, kind: LookupKind, value: str) -> None:
        try:
            await self._redis.delete(self.key(kind, value))
        except RedisError as exc:
            self._errors += 1
            logger.warning("Site cache delete failed: %s", exc)

    async def clear(self) -> int:
        removed = 0
        try:
            async for key in self._redis.scan_iter(match=f"{self._prefix}*"):
                removed += await self._redis.delete(key)
        except RedisError as exc:
            self._errors += 1
            logger.warning("Site cache clear failed: %s", exc)
        return removed

    async def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "provider": self.provider,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / lookups, 4) if lookups else None,
        }

    async def close(self) -> None:
        await self._redis.aclose()


# ─── Helpers ─────────────────────────────────────────────


def create_site_cache(settings: Settings) -> SiteCache:
    """Pick the backend named by CACHE_BACKEND."""
    if settings.CACHE_BACKEND == "redis":
        return RedisSiteCache.from_url(settings.REDIS_URL, key_prefix=settings.CACHE_KEY_PREFIX)
    return MemorySiteCache(max_size=settings.CACHE_MAX_SIZE)


async def invalidate_site(cache: SiteCache, site: SiteRecord) -> None:
    """Drop every key a site can be resolved by."""
    for key in site.lookup_keys():
        await cache.delete(key.kind, key.value)


async def warmup(
    cache: SiteCache,
    sites: Iterable[SiteRecord],
    ttl_for: Callable[[LookupKind], int],
) -> int:
    """Preload frequently visited sites; returns how many entries were written."""
    written = 0
    for site in sites:
        if not site.is_active:
            continue
        for key in site.lookup_keys():
            await cache.put(key.kind, key.value, site, ttl_for(key.kind))
            written += 1
    return written
