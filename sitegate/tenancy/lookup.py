"""
SiteLookupService — cache first, datastore on miss.

Returns one of three result variants instead of raising, so the pipeline
branches on data:
- SiteFound: an active site (cache_hit tells where it came from)
- SiteNotFound: no active site owns the key; never cached
- LookupFailed: the datastore errored or ran past the timeout
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Union

from sitegate.models import LookupKey, LookupKind, SiteRecord
from sitegate.store.base import SiteStore
from sitegate.store.errors import DatastoreError, DatastoreTimeoutError
from sitegate.tenancy.cache import SiteCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SiteFound:
    site: SiteRecord
    cache_hit: bool
    db_latency_ms: float = 0.0


@dataclass(frozen=True)
class SiteNotFound:
    key: LookupKey


@dataclass(frozen=True)
class LookupFailed:
    key: LookupKey
    error: DatastoreError


LookupResult = Union[SiteFound, SiteNotFound, LookupFailed]


class SiteLookupService:
    def __init__(
        self,
        store: SiteStore,
        cache: SiteCache,
        ttl_for: Callable[[LookupKind], int],
        timeout_seconds: float = 0.3,
    ) -> None:
        self._store = store
        self._cache = cache
        self._ttl_for = ttl_for
        self._timeout = timeout_seconds

    @property
    def cache(self) -> SiteCache:
        return self._cache

    async def lookup(self, kind: LookupKind, value: str) -> LookupResult:
        key = LookupKey(kind=kind, value=value)

        cached = await self._cache.get(kind, value)
        if cached is not None:
            logger.debug("Site cache HIT: %s:%s", kind.value, value)
            return SiteFound(site=cached, cache_hit=True)

        started = time.perf_counter()
        try:
            site = await asyncio.wait_for(
                self._store.find_active_site_by(kind, value), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            return LookupFailed(
                key=key,
                error=DatastoreTimeoutError(f"site lookup exceeded {self._timeout:.3f}s"),
            )
        except DatastoreError as exc:
            return LookupFailed(key=key, error=exc)

        db_latency_ms = (time.perf_counter() - started) * 1000

        # A stale or mismatched row is treated like no row at all
        if site is None or not site.is_active or not _owns(site, kind, value):
            return SiteNotFound(key=key)

        await self._cache.put(kind, value, site, self._ttl_for(kind))
        logger.debug("Site cache SET: %s:%s (%.1fms db)", kind.value, value, db_latency_ms)
        return SiteFound(site=site, cache_hit=False, db_latency_ms=db_latency_ms)


def _owns(site: SiteRecord, kind: LookupKind, value: str) -> bool:
    if kind == LookupKind.SUBDOMAIN:
        return site.subdomain == value
    return site.custom_domain == value
