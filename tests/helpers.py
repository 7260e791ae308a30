"""Shared test helpers."""

from __future__ import annotations

from sitegate.config import Settings
from sitegate.models import (
    AuthUser,
    Membership,
    MembershipRole,
    RequestContext,
    SiteRecord,
)
from sitegate.store import InMemoryAuthProvider, InMemorySiteStore
from sitegate.tenancy.cache import MemorySiteCache
from sitegate.tenancy.hostname import normalize_host
from sitegate.tenancy.pipeline import TenantPipeline


class FakeClock:
    """Manually advanced clock for TTL and rate-limit tests."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    """Production-like settings for blooms.cc, no .env file."""
    defaults = dict(
        APP_ENV="production",
        APP_DOMAIN="blooms.cc",
        SUPABASE_URL="",
        CACHE_BACKEND="memory",
        ADMIN_API_TOKEN="admin-token",
        _env_file=None,
    )
    defaults.update(overrides)
    return Settings(**defaults)


def make_site(**overrides) -> SiteRecord:
    """Create a published, active site with sensible defaults."""
    defaults = dict(
        id="site-1",
        subdomain="acme",
        name="Acme",
        is_published=True,
        is_active=True,
    )
    defaults.update(overrides)
    return SiteRecord(**defaults)


def make_membership(**overrides) -> Membership:
    defaults = dict(
        site_id="site-1",
        user_id="user-1",
        role=MembershipRole.OWNER,
        is_active=True,
    )
    defaults.update(overrides)
    return Membership(**defaults)


def make_user(**overrides) -> AuthUser:
    defaults = dict(id="user-1", email="owner@acme.test")
    defaults.update(overrides)
    return AuthUser(**defaults)


def make_request(host: str = "acme.blooms.cc", path: str = "/", **overrides) -> RequestContext:
    defaults = dict(
        host=host,
        hostname=normalize_host(host),
        path=path,
        client_ip="203.0.113.7",
    )
    defaults.update(overrides)
    return RequestContext(**defaults)


def signed_in(request: RequestContext, token: str = "session-1") -> RequestContext:
    return request.model_copy(update={"cookies": {**request.cookies, "sb-access-token": token}})


def make_pipeline(
    settings: Settings | None = None,
    store: InMemorySiteStore | None = None,
    auth: InMemoryAuthProvider | None = None,
    cache: MemorySiteCache | None = None,
) -> TenantPipeline:
    return TenantPipeline.build(
        settings or make_settings(),
        store=store if store is not None else InMemorySiteStore([make_site()]),
        auth=auth if auth is not None else InMemoryAuthProvider(),
        cache=cache if cache is not None else MemorySiteCache(),
    )
