"""
TenantPipeline — the per-request decision procedure.

    path table → host classifier → (development | main app | site domain)
    site domain: impersonation? → resolver → lookup → access → security

Each request is handled once, top to bottom, and produces a single Decision.
Nothing here raises past `process`: failures become redirects, and anything
unexpected passes the request through without tenant context.
"""

from __future__ import annotations

import asyncio
import logging
import time

from sitegate.config import Settings
from sitegate.logging_config import log_domain_resolution
from sitegate.models import (
    AuthUser,
    HostKind,
    RequestContext,
    ResolutionStatus,
    SiteResolution,
    TenantContext,
    Viewer,
)
from sitegate.store.base import AuthProvider, SiteStore
from sitegate.store.errors import AuthProviderError, DatastoreError
from sitegate.tenancy.access import AccessPolicy
from sitegate.tenancy.cache import SiteCache, cache_ttl_for
from sitegate.tenancy.context import COOKIE_DEV_SUBDOMAIN, ContextPropagator
from sitegate.tenancy.hostname import classify, is_dev_subdomain_host, is_local_main_host
from sitegate.tenancy.lookup import LookupFailed, SiteLookupService, SiteNotFound
from sitegate.tenancy.outcomes import Decision, Outcome, OutcomeRouter
from sitegate.tenancy.resolver import SiteResolverChain, build_resolver_chain
from sitegate.tenancy.routes import RouteCategory, classify_path
from sitegate.tenancy.security import SecurityPolicyFilter

logger = logging.getLogger(__name__)

IMPERSONATION_QUERY_PARAM = "admin_impersonation"
IMPERSONATION_HEADER = "x-admin-impersonation-token"
IMPERSONATION_COOKIE = "admin_impersonation_token"

ADMIN_ROUTE_HEADERS = {
    "x-admin-route": "true",
    "x-bypass-site-resolution": "true",
    "x-bypass-auth-redirect": "true",
}


class TenantPipeline:
    def __init__(
        self,
        settings: Settings,
        auth: AuthProvider,
        lookup: SiteLookupService,
        access: AccessPolicy,
        security: SecurityPolicyFilter,
        propagator: ContextPropagator,
        store: SiteStore,
        resolvers: SiteResolverChain | None = None,
        router: OutcomeRouter | None = None,
    ) -> None:
        self.settings = settings
        self.propagator = propagator
        self._auth = auth
        self._lookup = lookup
        self._access = access
        self._security = security
        self._store = store
        self._resolvers = resolvers or build_resolver_chain(settings)
        self._router = router or OutcomeRouter(settings)

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: SiteStore,
        auth: AuthProvider,
        cache: SiteCache,
    ) -> TenantPipeline:
        """Wire the standard collaborators from settings."""
        return cls(
            settings=settings,
            auth=auth,
            lookup=SiteLookupService(
                store,
                cache,
                ttl_for=lambda kind: cache_ttl_for(kind, settings),
                timeout_seconds=settings.LOOKUP_TIMEOUT_SECONDS,
            ),
            access=AccessPolicy(store, timeout_seconds=settings.LOOKUP_TIMEOUT_SECONDS),
            security=SecurityPolicyFilter(settings),
            propagator=ContextPropagator(
                max_age=settings.CONTEXT_COOKIE_MAX_AGE,
                secure=settings.secure_cookies,
                secret_key=settings.SECRET_KEY,
            ),
            store=store,
        )

    @property
    def cache(self) -> SiteCache:
        return self._lookup.cache

    async def close(self) -> None:
        await self._security.close()
        await self.cache.close()

    async def process(self, request: RequestContext) -> Decision:
        started = time.perf_counter()
        try:
            decision = await self._process(request, started)
        except Exception:
            # Fail open for availability; no tenant context leaks through
            logger.exception("Tenant resolution crashed for %s", request.hostname)
            decision = Decision(
                outcome=Outcome.PIPELINE_ERROR, status=ResolutionStatus.MIDDLEWARE_ERROR
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        if decision.status is not None:
            site_id = decision.tenant.site_id if decision.tenant else None
            log_domain_resolution(request.hostname, site_id, decision.status, elapsed_ms)
        else:
            logger.debug("%s %s -> %s", request.hostname, request.path, decision.outcome.value)
        return decision

    async def _process(self, request: RequestContext, started: float) -> Decision:
        category = classify_path(request.path)
        if category == RouteCategory.SKIP:
            return Decision(outcome=Outcome.SKIPPED)
        if category == RouteCategory.ADMIN:
            logger.info("Admin route accessed: %s from %s", request.path, request.hostname)
            return Decision(
                outcome=Outcome.ADMIN,
                status=ResolutionStatus.ADMIN,
                headers=dict(ADMIN_ROUTE_HEADERS),
            )

        kind = classify(request.hostname, self.settings)
        if kind == HostKind.DEVELOPMENT:
            return await self._development(request, category, started)
        if kind == HostKind.MAIN_APPLICATION:
            return await self._main_app(request, category)
        return await self._site_domain(request, started)

    # ─── Development ──────────────────────────────────

    async def _development(
        self, request: RequestContext, category: RouteCategory, started: float
    ) -> Decision:
        hostname = request.hostname

        if is_dev_subdomain_host(hostname):
            decision = await self._site_domain(request, started)
            if decision.is_passthrough:
                label = hostname[: -len(".localhost")]
                decision.headers["x-dev-subdomain"] = label
                decision.cookies.append(
                    self.propagator.cookie(COOKIE_DEV_SUBDOMAIN, label)
                )
            return decision

        if is_local_main_host(hostname):
            return await self._main_app(request, category)

        return Decision(outcome=Outcome.DEVELOPMENT, status=ResolutionStatus.DEVELOPMENT)

    # ─── Main application ─────────────────────────────

    async def _main_app(self, request: RequestContext, category: RouteCategory) -> Decision:
        if category == RouteCategory.PUBLIC:
            return Decision(outcome=Outcome.MAIN_APP_PASSTHROUGH)

        user = await self._current_user(request)
        if category == RouteCategory.AUTH and user is not None:
            return Decision(
                outcome=Outcome.MAIN_APP_DASHBOARD_REDIRECT,
                redirect_url=self._router.dashboard_redirect(request),
            )
        if category == RouteCategory.PROTECTED and user is None:
            return Decision(
                outcome=Outcome.MAIN_APP_LOGIN_REDIRECT,
                redirect_url=self._router.login_redirect(request),
            )
        return Decision(outcome=Outcome.MAIN_APP_PASSTHROUGH)

    async def _current_user(self, request: RequestContext) -> AuthUser | None:
        """Auth failures of any kind mean "no user"."""
        try:
            return await asyncio.wait_for(
                self._auth.get_current_user(request),
                timeout=self.settings.AUTH_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("Auth provider timed out for %s", request.hostname)
        except AuthProviderError as exc:
            logger.warning("Auth provider failed for %s: %s", request.hostname, exc)
        return None

    # ─── Site domain ──────────────────────────────────

    async def _site_domain(self, request: RequestContext, started: float) -> Decision:
        delete_cookies: list[str] = []

        token = _impersonation_token(request)
        if token:
            decision = await self._impersonate(request, token, started)
            if decision is not None:
                return decision
            logger.warning("Invalid impersonation token on %s; continuing", request.hostname)
            delete_cookies.append(IMPERSONATION_COOKIE)

        decision = await self._resolve_site(request, started)
        decision.delete_cookies.extend(delete_cookies)
        return decision

    async def _resolve_site(self, request: RequestContext, started: float) -> Decision:
        hostname = request.hostname
        resolution = self._resolvers.resolve(hostname)
        if not resolution.is_valid or resolution.kind is None or resolution.value is None:
            return self._redirect(Outcome.INVALID_HOSTNAME, ResolutionStatus.INVALID_HOSTNAME, hostname)

        result = await self._lookup.lookup(resolution.kind, resolution.value)

        if isinstance(result, LookupFailed):
            logger.error(
                "Site lookup failed for %s:%s: %s",
                resolution.kind.value,
                resolution.value,
                result.error,
            )
            return self._redirect(
                Outcome.DATASTORE_ERROR, ResolutionStatus.DATABASE_ERROR, hostname, resolution
            )

        if isinstance(result, SiteNotFound):
            return self._redirect(
                self._router.not_found_outcome(resolution),
                ResolutionStatus.SITE_NOT_FOUND,
                hostname,
                resolution,
            )

        site = result.site
        if not site.is_published:
            viewer = Viewer(user=await self._current_user(request))
            access = await self._access.evaluate(site, viewer)
            if not access.can_view_unpublished:
                return self._redirect(
                    Outcome.SITE_UNPUBLISHED_NO_ACCESS,
                    ResolutionStatus.SITE_UNPUBLISHED,
                    hostname,
                    resolution,
                    site_name=site.name,
                )

        decision = Decision(
            outcome=Outcome.SUCCESS,
            status=ResolutionStatus.CACHED if result.cache_hit else ResolutionStatus.SUCCESS,
        )

        if self.settings.SECURITY_ENABLED:
            security = await self._security.apply(request, site)
            if not security.success and security.rejection is not None:
                return Decision(
                    outcome=Outcome.SECURITY_VIOLATION,
                    status=ResolutionStatus.SECURITY_VIOLATION,
                    rejection=security.rejection,
                    clear_context=security.rejection.clear_context_cookies,
                )
            decision.headers.update(security.headers)
            decision.cookies.extend(security.cookies)

        decision.tenant = TenantContext.from_site(
            site,
            hostname,
            cache_hit=result.cache_hit,
            latency_ms=(time.perf_counter() - started) * 1000,
        )
        decision.headers["X-Cache-Provider"] = self.cache.provider
        return decision

    def _redirect(
        self,
        outcome: Outcome,
        status: ResolutionStatus,
        hostname: str,
        resolution: SiteResolution | None = None,
        site_name: str | None = None,
    ) -> Decision:
        return Decision(
            outcome=outcome,
            status=status,
            redirect_url=self._router.site_redirect(
                outcome, hostname, resolution=resolution, site_name=site_name
            ),
        )

    # ─── Impersonation ────────────────────────────────

    async def _impersonate(
        self, request: RequestContext, token: str, started: float
    ) -> Decision | None:
        try:
            context = await asyncio.wait_for(
                self._store.get_impersonation_context(token),
                timeout=self.settings.LOOKUP_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("Impersonation check timed out on %s", request.hostname)
            return None
        except DatastoreError as exc:
            logger.warning("Impersonation check failed on %s: %s", request.hostname, exc)
            return None

        if context is None or not context.valid:
            return None

        logger.info(
            "Admin %s impersonating site %s (session %s)",
            context.admin_user_id,
            context.site_id,
            context.session_id,
        )
        decision = Decision(
            outcome=Outcome.IMPERSONATION,
            status=ResolutionStatus.IMPERSONATION_ACCESS,
            tenant=TenantContext.from_site(
                context.to_site(),
                request.hostname,
                latency_ms=(time.perf_counter() - started) * 1000,
            ),
            headers={
                "x-admin-impersonation": "true",
                "x-impersonation-session-id": context.session_id,
                "x-impersonation-admin-id": context.admin_user_id,
            },
        )
        if context.admin_email:
            decision.headers["x-impersonation-admin-email"] = context.admin_email

        # Persist a token that arrived by link so later navigation keeps it
        if request.query.get(IMPERSONATION_QUERY_PARAM):
            decision.cookies.append(self.propagator.cookie(IMPERSONATION_COOKIE, token))
        return decision


def _impersonation_token(request: RequestContext) -> str | None:
    return (
        request.query.get(IMPERSONATION_QUERY_PARAM)
        or request.header(IMPERSONATION_HEADER)
        or request.cookies.get(IMPERSONATION_COOKIE)
        or None
    )
