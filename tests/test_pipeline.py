"""Tests for TenantPipeline — one Decision per request, never an exception."""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from sitegate.models import ImpersonationContext, LookupKind, ResolutionStatus
from sitegate.store import DatastoreError, InMemoryAuthProvider, InMemorySiteStore
from sitegate.tenancy.cache import MemorySiteCache
from sitegate.tenancy.outcomes import Outcome
from tests.helpers import (
    make_membership,
    make_pipeline,
    make_request,
    make_settings,
    make_site,
    make_user,
    signed_in,
)


def make_auth() -> InMemoryAuthProvider:
    return InMemoryAuthProvider({"session-1": make_user()})


def make_impersonation(**overrides) -> ImpersonationContext:
    defaults = dict(
        valid=True,
        session_id="imp-1",
        admin_user_id="admin-1",
        admin_email="admin@blooms.cc",
        site_id="site-9",
        site_name="Hidden",
        site_subdomain="hidden",
    )
    defaults.update(overrides)
    return ImpersonationContext(**defaults)


# ─── Route table short-circuits ──────────────────────────


class TestRoutes:
    async def test_skip_paths_bypass_everything(self):
        store = InMemorySiteStore([make_site()])
        decision = await make_pipeline(store=store).process(make_request(path="/_next/app.js"))

        assert decision.outcome == Outcome.SKIPPED
        assert decision.is_passthrough
        assert store.queries == []

    async def test_admin_paths_skip_resolution_and_auth(self):
        decision = await make_pipeline().process(make_request("notreal.blooms.cc", "/admin/sites"))

        assert decision.outcome == Outcome.ADMIN
        assert decision.tenant is None
        assert decision.headers["x-bypass-site-resolution"] == "true"


# ─── Site domains ────────────────────────────────────────


class TestSiteDomain:
    async def test_success_attaches_tenant(self):
        cache = MemorySiteCache()
        decision = await make_pipeline(cache=cache).process(make_request())

        assert decision.outcome == Outcome.SUCCESS
        assert decision.status == ResolutionStatus.SUCCESS
        assert decision.tenant.subdomain == "acme"
        assert decision.tenant.hostname == "acme.blooms.cc"
        assert decision.headers["X-Cache-Provider"] == "memory"
        assert "Content-Security-Policy" in decision.headers
        assert await cache.get(LookupKind.SUBDOMAIN, "acme") is not None

    async def test_second_request_is_cached(self):
        pipeline = make_pipeline()
        await pipeline.process(make_request())
        decision = await pipeline.process(make_request())

        assert decision.status == ResolutionStatus.CACHED
        assert decision.tenant.cache_hit is True

    async def test_custom_domain(self):
        store = InMemorySiteStore([make_site(custom_domain="shop.acme.com")])
        decision = await make_pipeline(store=store).process(make_request("Shop.Acme.com:443"))

        assert decision.outcome == Outcome.SUCCESS
        assert decision.tenant.custom_domain == "shop.acme.com"

    async def test_invalid_hostname(self):
        decision = await make_pipeline().process(make_request("badhost!!"))

        parts = urlsplit(decision.redirect_url)
        assert decision.outcome == Outcome.INVALID_HOSTNAME
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://blooms.cc/domain-error"
        assert parse_qs(parts.query) == {"error": ["invalid_domain"], "hostname": ["badhost!!"]}

    async def test_available_subdomain(self):
        decision = await make_pipeline().process(make_request("notreal.blooms.cc"))

        assert decision.outcome == Outcome.SITE_NOT_FOUND_SUBDOMAIN_AVAILABLE
        assert decision.status == ResolutionStatus.SITE_NOT_FOUND
        assert decision.redirect_url == "https://blooms.cc/create-site?subdomain=notreal"

    async def test_reserved_subdomain(self):
        decision = await make_pipeline().process(make_request("www.blooms.cc"))
        assert decision.redirect_url == "https://blooms.cc/site-not-found?hostname=www.blooms.cc"

    async def test_unknown_custom_domain(self):
        decision = await make_pipeline().process(make_request("shop.unknown.com"))
        assert decision.redirect_url == "https://blooms.cc/domain-setup?domain=shop.unknown.com"

    async def test_datastore_error(self):
        store = InMemorySiteStore([make_site()])
        store.fail_with = DatastoreError("connection refused")

        decision = await make_pipeline(store=store).process(make_request())

        assert decision.outcome == Outcome.DATASTORE_ERROR
        assert decision.status == ResolutionStatus.DATABASE_ERROR
        assert decision.redirect_url == "https://blooms.cc/system-error?hostname=acme.blooms.cc"


# ─── Unpublished sites ───────────────────────────────────


class TestUnpublished:
    def make_store(self, **membership) -> InMemorySiteStore:
        memberships = [make_membership(**membership)] if membership else []
        return InMemorySiteStore([make_site(is_published=False)], memberships)

    async def test_anonymous_viewer_sent_to_maintenance(self):
        pipeline = make_pipeline(store=self.make_store(), auth=make_auth())
        decision = await pipeline.process(make_request())

        assert decision.outcome == Outcome.SITE_UNPUBLISHED_NO_ACCESS
        assert decision.status == ResolutionStatus.SITE_UNPUBLISHED
        assert decision.redirect_url == "https://blooms.cc/site-maintenance?site=Acme"

    async def test_member_without_membership_row(self):
        pipeline = make_pipeline(store=self.make_store(), auth=make_auth())
        decision = await pipeline.process(signed_in(make_request()))
        assert decision.outcome == Outcome.SITE_UNPUBLISHED_NO_ACCESS

    async def test_owner_sees_unpublished_site(self):
        pipeline = make_pipeline(store=self.make_store(is_active=True), auth=make_auth())
        decision = await pipeline.process(signed_in(make_request()))

        assert decision.outcome == Outcome.SUCCESS
        assert decision.tenant.site_id == "site-1"

    async def test_inactive_membership(self):
        pipeline = make_pipeline(store=self.make_store(is_active=False), auth=make_auth())
        decision = await pipeline.process(signed_in(make_request()))
        assert decision.outcome == Outcome.SITE_UNPUBLISHED_NO_ACCESS

    async def test_auth_failure_counts_as_anonymous(self):
        auth = make_auth()
        auth.fail = True
        pipeline = make_pipeline(store=self.make_store(is_active=True), auth=auth)

        decision = await pipeline.process(signed_in(make_request()))
        assert decision.outcome == Outcome.SITE_UNPUBLISHED_NO_ACCESS


# ─── Security ────────────────────────────────────────────


class TestSecurity:
    async def test_rejection_is_not_rewritten(self):
        request = make_request(cookies={"x-site-id": "site-2"})
        decision = await make_pipeline().process(request)

        assert decision.outcome == Outcome.SECURITY_VIOLATION
        assert decision.redirect_url is None
        assert decision.rejection.status_code == 403
        assert decision.clear_context is True

    async def test_disabled(self):
        request = make_request(cookies={"x-site-id": "site-2"})
        pipeline = make_pipeline(settings=make_settings(SECURITY_ENABLED=False))

        decision = await pipeline.process(request)

        assert decision.outcome == Outcome.SUCCESS
        assert "Content-Security-Policy" not in decision.headers


# ─── Main application ────────────────────────────────────


class TestMainApp:
    async def test_protected_route_without_user_redirects_to_login(self):
        decision = await make_pipeline().process(make_request("blooms.cc", "/dashboard"))

        assert decision.outcome == Outcome.MAIN_APP_LOGIN_REDIRECT
        assert decision.redirect_url == "https://blooms.cc/login?redirectTo=%2Fdashboard"

    async def test_signed_in_user_passes(self):
        pipeline = make_pipeline(auth=make_auth())
        decision = await pipeline.process(signed_in(make_request("blooms.cc", "/dashboard")))

        assert decision.outcome == Outcome.MAIN_APP_PASSTHROUGH
        assert decision.tenant is None

    async def test_signed_in_user_on_login_goes_to_dashboard(self):
        pipeline = make_pipeline(auth=make_auth())
        decision = await pipeline.process(signed_in(make_request("blooms.cc", "/login")))

        assert decision.outcome == Outcome.MAIN_APP_DASHBOARD_REDIRECT
        assert decision.redirect_url == "https://blooms.cc/dashboard"

    async def test_public_route(self):
        decision = await make_pipeline().process(make_request("blooms.cc", "/platform/terms"))
        assert decision.outcome == Outcome.MAIN_APP_PASSTHROUGH

    async def test_auth_provider_failure_means_no_user(self):
        auth = make_auth()
        auth.fail = True

        decision = await make_pipeline(auth=auth).process(
            signed_in(make_request("blooms.cc", "/dashboard"))
        )
        assert decision.outcome == Outcome.MAIN_APP_LOGIN_REDIRECT


# ─── Development ─────────────────────────────────────────


class TestDevelopment:
    async def test_localhost_gets_auth_check(self):
        request = make_request("localhost:3000", "/dashboard", scheme="http")
        decision = await make_pipeline().process(request)

        assert decision.outcome == Outcome.MAIN_APP_LOGIN_REDIRECT
        assert urlsplit(decision.redirect_url).path == "/login"
        assert parse_qs(urlsplit(decision.redirect_url).query) == {"redirectTo": ["/dashboard"]}

    async def test_dev_subdomain_resolves_site(self):
        request = make_request("acme.localhost:3000", scheme="http")
        decision = await make_pipeline().process(request)

        assert decision.outcome == Outcome.SUCCESS
        assert decision.tenant.subdomain == "acme"
        assert decision.headers["x-dev-subdomain"] == "acme"
        assert [c.name for c in decision.cookies] == ["x-dev-subdomain"]

    async def test_other_dev_hosts_pass_through(self):
        decision = await make_pipeline().process(make_request("printer.local"))

        assert decision.outcome == Outcome.DEVELOPMENT
        assert decision.tenant is None


# ─── Impersonation ───────────────────────────────────────


class TestImpersonation:
    async def test_valid_token_from_query(self):
        store = InMemorySiteStore([make_site()])
        store.impersonations["tok"] = make_impersonation()

        request = make_request("hidden.blooms.cc", query={"admin_impersonation": "tok"})
        decision = await make_pipeline(store=store).process(request)

        assert decision.outcome == Outcome.IMPERSONATION
        assert decision.status == ResolutionStatus.IMPERSONATION_ACCESS
        assert decision.tenant.site_id == "site-9"
        assert decision.headers["x-impersonation-admin-id"] == "admin-1"
        assert [c.name for c in decision.cookies] == ["admin_impersonation_token"]

    async def test_valid_token_from_cookie_sets_no_cookie(self):
        store = InMemorySiteStore([make_site()])
        store.impersonations["tok"] = make_impersonation()

        request = make_request(cookies={"admin_impersonation_token": "tok"})
        decision = await make_pipeline(store=store).process(request)

        assert decision.outcome == Outcome.IMPERSONATION
        assert decision.cookies == []

    async def test_invalid_token_is_cleared_and_resolution_continues(self):
        request = make_request(cookies={"admin_impersonation_token": "stale"})
        decision = await make_pipeline().process(request)

        assert decision.outcome == Outcome.SUCCESS
        assert decision.tenant.site_id == "site-1"
        assert decision.delete_cookies == ["admin_impersonation_token"]


# ─── Top-level guard ─────────────────────────────────────


class TestGuard:
    async def test_unexpected_error_passes_through_without_tenant(self):
        class ExplodingStore(InMemorySiteStore):
            async def find_active_site_by(self, kind, value):
                raise RuntimeError("bug")

        decision = await make_pipeline(store=ExplodingStore()).process(make_request())

        assert decision.outcome == Outcome.PIPELINE_ERROR
        assert decision.status == ResolutionStatus.MIDDLEWARE_ERROR
        assert decision.is_passthrough
        assert decision.tenant is None

