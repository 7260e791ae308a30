"""
Boundary interfaces for the collaborators the pipeline consumes.
"""

from __future__ import annotations

from typing import Protocol

from sitegate.models import (
    AuthUser,
    ImpersonationContext,
    LookupKind,
    Membership,
    RequestContext,
    SiteRecord,
)


class SiteStore(Protocol):
    """Read side of the persistent store."""

    async def find_active_site_by(self, kind: LookupKind, value: str) -> SiteRecord | None: ...

    async def find_membership(self, user_id: str, site_id: str) -> Membership | None: ...

    async def get_impersonation_context(self, token: str) -> ImpersonationContext | None: ...


class AuthProvider(Protocol):
    """Cookie/bearer session lookup."""

    async def get_current_user(self, request: RequestContext) -> AuthUser | None: ...
