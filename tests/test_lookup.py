"""Tests for SiteLookupService — cache first, datastore on miss."""

from __future__ import annotations

import asyncio

from sitegate.models import LookupKind, SiteRecord
from sitegate.store import DatastoreError, DatastoreTimeoutError, InMemorySiteStore
from sitegate.tenancy.cache import MemorySiteCache
from sitegate.tenancy.lookup import LookupFailed, SiteFound, SiteLookupService, SiteNotFound
from tests.helpers import FakeClock, make_site

SUB = LookupKind.SUBDOMAIN


def make_service(store: InMemorySiteStore, cache: MemorySiteCache | None = None, **kwargs):
    return SiteLookupService(
        store,
        cache if cache is not None else MemorySiteCache(clock=FakeClock()),
        ttl_for=lambda kind: 3600,
        **kwargs,
    )


class SlowStore(InMemorySiteStore):
    async def find_active_site_by(self, kind: LookupKind, value: str) -> SiteRecord | None:
        await asyncio.sleep(1)
        return await super().find_active_site_by(kind, value)


class TestLookup:
    async def test_miss_queries_store_and_fills_cache(self):
        store = InMemorySiteStore([make_site()])
        cache = MemorySiteCache(clock=FakeClock())
        service = make_service(store, cache)

        result = await service.lookup(SUB, "acme")

        assert isinstance(result, SiteFound)
        assert result.cache_hit is False
        assert result.site.name == "Acme"
        assert await cache.get(SUB, "acme") == result.site
        assert store.queries == [("subdomain", "acme")]

    async def test_hit_skips_store(self):
        store = InMemorySiteStore([make_site()])
        service = make_service(store)

        await service.lookup(SUB, "acme")
        result = await service.lookup(SUB, "acme")

        assert isinstance(result, SiteFound)
        assert result.cache_hit is True
        assert len(store.queries) == 1

    async def test_not_found_is_never_cached(self):
        store = InMemorySiteStore([])
        cache = MemorySiteCache(clock=FakeClock())
        service = make_service(store, cache)

        first = await service.lookup(SUB, "notreal")
        second = await service.lookup(SUB, "notreal")

        assert isinstance(first, SiteNotFound)
        assert isinstance(second, SiteNotFound)
        assert first.key.value == "notreal"
        assert len(store.queries) == 2
        assert len(cache) == 0

    async def test_site_provisioned_after_miss_is_found(self):
        store = InMemorySiteStore([])
        service = make_service(store)

        assert isinstance(await service.lookup(SUB, "acme"), SiteNotFound)
        store.add_site(make_site())
        assert isinstance(await service.lookup(SUB, "acme"), SiteFound)

    async def test_inactive_site_is_not_found(self):
        store = InMemorySiteStore([make_site(is_active=False)])
        assert isinstance(await make_service(store).lookup(SUB, "acme"), SiteNotFound)

    async def test_datastore_error_is_distinct(self):
        store = InMemorySiteStore([make_site()])
        store.fail_with = DatastoreError("connection refused", status_code=503)

        result = await make_service(store).lookup(SUB, "acme")

        assert isinstance(result, LookupFailed)
        assert result.error.status_code == 503

    async def test_timeout_becomes_datastore_error(self):
        store = SlowStore([make_site()])
        service = make_service(store, timeout_seconds=0.01)

        result = await service.lookup(SUB, "acme")

        assert isinstance(result, LookupFailed)
        assert isinstance(result.error, DatastoreTimeoutError)

    async def test_mismatched_row_is_not_found(self):
        class WrongRowStore(InMemorySiteStore):
            async def find_active_site_by(self, kind, value):
                return make_site(subdomain="other")

        result = await make_service(WrongRowStore()).lookup(SUB, "acme")
        assert isinstance(result, SiteNotFound)
