"""
In-memory store and auth provider for local runs and tests (swap for Supabase
in deployments).
"""

from __future__ import annotations

from sitegate.models import (
    AuthUser,
    ImpersonationContext,
    LookupKind,
    Membership,
    RequestContext,
    SiteRecord,
)
from sitegate.store.errors import AuthProviderError, DatastoreError


class InMemorySiteStore:
    def __init__(
        self,
        sites: list[SiteRecord] | None = None,
        memberships: list[Membership] | None = None,
    ) -> None:
        self.sites: dict[str, SiteRecord] = {s.id: s for s in sites or []}
        self.memberships: list[Membership] = list(memberships or [])
        self.impersonations: dict[str, ImpersonationContext] = {}
        self.fail_with: DatastoreError | None = None
        self.queries: list[tuple[str, str]] = []

    def add_site(self, site: SiteRecord) -> None:
        self.sites[site.id] = site

    def add_membership(self, membership: Membership) -> None:
        self.memberships.append(membership)

    async def find_active_site_by(self, kind: LookupKind, value: str) -> SiteRecord | None:
        self.queries.append((kind.value, value))
        if self.fail_with is not None:
            raise self.fail_with

        for site in self.sites.values():
            if not site.is_active:
                continue
            if kind == LookupKind.SUBDOMAIN and site.subdomain == value:
                return site
            if kind == LookupKind.CUSTOM_DOMAIN and site.custom_domain == value:
                return site
        return None

    async def find_membership(self, user_id: str, site_id: str) -> Membership | None:
        if self.fail_with is not None:
            raise self.fail_with

        for membership in self.memberships:
            if membership.user_id == user_id and membership.site_id == site_id:
                return membership
        return None

    async def get_impersonation_context(self, token: str) -> ImpersonationContext | None:
        if self.fail_with is not None:
            raise self.fail_with

        context = self.impersonations.get(token)
        if context is None or not context.valid:
            return None
        return context


class InMemoryAuthProvider:
    """Maps session tokens (bearer header or `sb-access-token`) to users."""

    def __init__(self, sessions: dict[str, AuthUser] | None = None) -> None:
        self.sessions: dict[str, AuthUser] = dict(sessions or {})
        self.fail = False

    async def get_current_user(self, request: RequestContext) -> AuthUser | None:
        if self.fail:
            raise AuthProviderError("auth provider unavailable")

        token = request.cookies.get("sb-access-token")
        auth = request.header("authorization")
        if auth and auth.lower().startswith("bearer "):
            token = auth[7:].strip()
        if not token:
            return None
        return self.sessions.get(token)
