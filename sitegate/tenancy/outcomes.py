"""
Outcome routing — every terminal state of the pipeline and where it sends
the client.

Site-domain failures always redirect to the main application domain, never
back to the tenant host. Main-app auth redirects stay on the host the
client used.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlencode

from sitegate.config import Settings
from sitegate.models import (
    LookupKind,
    RequestContext,
    ResolutionStatus,
    SiteResolution,
    TenantContext,
)
from sitegate.tenancy.context import ResponseCookie
from sitegate.tenancy.resolver import is_available_subdomain, is_valid_custom_domain
from sitegate.tenancy.security import Rejection


class Outcome(str, Enum):
    SKIPPED = "skipped"
    ADMIN = "admin"
    DEVELOPMENT = "development"
    MAIN_APP_PASSTHROUGH = "main_app_passthrough"
    MAIN_APP_LOGIN_REDIRECT = "main_app_login_redirect"
    MAIN_APP_DASHBOARD_REDIRECT = "main_app_dashboard_redirect"
    INVALID_HOSTNAME = "invalid_hostname"
    SITE_NOT_FOUND_SUBDOMAIN_AVAILABLE = "site_not_found_subdomain_available"
    SITE_NOT_FOUND_CUSTOM_DOMAIN = "site_not_found_custom_domain"
    SITE_NOT_FOUND_GENERIC = "site_not_found_generic"
    SITE_UNPUBLISHED_NO_ACCESS = "site_unpublished_no_access"
    DATASTORE_ERROR = "datastore_error"
    SECURITY_VIOLATION = "security_violation"
    IMPERSONATION = "impersonation"
    SUCCESS = "success"
    PIPELINE_ERROR = "pipeline_error"


# Redirect targets on the main domain, with the query parameter each carries
_SITE_REDIRECTS: dict[Outcome, str] = {
    Outcome.INVALID_HOSTNAME: "/domain-error",
    Outcome.SITE_NOT_FOUND_SUBDOMAIN_AVAILABLE: "/create-site",
    Outcome.SITE_NOT_FOUND_CUSTOM_DOMAIN: "/domain-setup",
    Outcome.SITE_NOT_FOUND_GENERIC: "/site-not-found",
    Outcome.SITE_UNPUBLISHED_NO_ACCESS: "/site-maintenance",
    Outcome.DATASTORE_ERROR: "/system-error",
}


@dataclass
class Decision:
    """What the middleware should do with the request."""

    outcome: Outcome
    status: ResolutionStatus | None = None
    redirect_url: str | None = None
    rejection: Rejection | None = None
    tenant: TenantContext | None = None
    headers: dict[str, str] = field(default_factory=dict)
    cookies: list[ResponseCookie] = field(default_factory=list)
    delete_cookies: list[str] = field(default_factory=list)
    clear_context: bool = False

    @property
    def is_redirect(self) -> bool:
        return self.redirect_url is not None

    @property
    def is_rejection(self) -> bool:
        return self.rejection is not None

    @property
    def is_passthrough(self) -> bool:
        return not self.is_redirect and not self.is_rejection


class OutcomeRouter:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def not_found_outcome(self, resolution: SiteResolution) -> Outcome:
        """Pick the not-found flavour: offer creation, domain setup, or neither."""
        value = resolution.value or ""
        if resolution.kind == LookupKind.SUBDOMAIN and is_available_subdomain(value):
            return Outcome.SITE_NOT_FOUND_SUBDOMAIN_AVAILABLE
        if resolution.kind == LookupKind.CUSTOM_DOMAIN and is_valid_custom_domain(value):
            return Outcome.SITE_NOT_FOUND_CUSTOM_DOMAIN
        return Outcome.SITE_NOT_FOUND_GENERIC

    def site_redirect(
        self,
        outcome: Outcome,
        hostname: str,
        resolution: SiteResolution | None = None,
        site_name: str | None = None,
    ) -> str:
        path = _SITE_REDIRECTS.get(outcome)
        if path is None:
            raise ValueError(f"{outcome.value} does not redirect")

        value = resolution.value if resolution and resolution.value else hostname
        if outcome == Outcome.INVALID_HOSTNAME:
            params = {"error": "invalid_domain", "hostname": hostname}
        elif outcome == Outcome.SITE_NOT_FOUND_SUBDOMAIN_AVAILABLE:
            params = {"subdomain": value}
        elif outcome == Outcome.SITE_NOT_FOUND_CUSTOM_DOMAIN:
            params = {"domain": value}
        elif outcome == Outcome.SITE_UNPUBLISHED_NO_ACCESS:
            params = {"site": site_name} if site_name else {}
        else:
            params = {"hostname": hostname}

        return self._build(self._settings.main_app_origin, path, params)

    def login_redirect(self, request: RequestContext) -> str:
        return self._build(self.request_origin(request), "/login", {"redirectTo": request.path})

    def dashboard_redirect(self, request: RequestContext) -> str:
        return self._build(self.request_origin(request), "/dashboard", {})

    def request_origin(self, request: RequestContext) -> str:
        # Behind the production proxy the internal port must not leak
        host = request.hostname if self._settings.is_production else request.host
        return f"{request.scheme}://{host or self._settings.APP_DOMAIN}"

    @staticmethod
    def _build(origin: str, path: str, params: dict[str, str]) -> str:
        query = urlencode(params)
        return f"{origin}{path}?{query}" if query else f"{origin}{path}"
