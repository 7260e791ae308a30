"""
Core models for sitegate host resolution.

Each inbound request resolves to at most one site (the tenant unit).
Rows coming out of the datastore are validated here before they are
allowed anywhere near the pipeline.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_DNS_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


# ─── Site ────────────────────────────────────────────────


class LookupKind(str, Enum):
    SUBDOMAIN = "subdomain"
    CUSTOM_DOMAIN = "custom_domain"


class SiteRecord(BaseModel):
    """A tenant site as stored in `public.sites`."""

    model_config = ConfigDict(extra="ignore")

    id: str
    subdomain: str
    custom_domain: str | None = None
    name: str
    is_published: bool = False
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # UUID columns may arrive as uuid.UUID from non-HTTP stores
        if value is not None and not isinstance(value, str):
            return str(value)
        return value

    @field_validator("subdomain")
    @classmethod
    def _check_subdomain(cls, value: str) -> str:
        value = value.strip().lower()
        if not _DNS_LABEL_RE.match(value):
            raise ValueError(f"invalid subdomain label: {value!r}")
        return value

    @field_validator("custom_domain")
    @classmethod
    def _normalize_custom_domain(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower().rstrip(".")
        return value or None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("site name must not be empty")
        return value

    def lookup_keys(self) -> list[LookupKey]:
        """Every key this site can be resolved by."""
        keys = [LookupKey(kind=LookupKind.SUBDOMAIN, value=self.subdomain)]
        if self.custom_domain:
            keys.append(LookupKey(kind=LookupKind.CUSTOM_DOMAIN, value=self.custom_domain))
        return keys


# ─── Host Resolution ─────────────────────────────────────


class HostKind(str, Enum):
    DEVELOPMENT = "development"
    MAIN_APPLICATION = "main_application"
    SITE_DOMAIN = "site_domain"


class LookupKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: LookupKind
    value: str


class SiteResolution(BaseModel):
    is_valid: bool
    kind: LookupKind | None = None
    value: str | None = None

    @classmethod
    def invalid(cls) -> SiteResolution:
        return cls(is_valid=False)

    @property
    def key(self) -> LookupKey | None:
        if not self.is_valid or self.kind is None or self.value is None:
            return None
        return LookupKey(kind=self.kind, value=self.value)


class ResolutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    CACHED = "CACHED"
    SITE_NOT_FOUND = "SITE_NOT_FOUND"
    INVALID_HOSTNAME = "INVALID_HOSTNAME"
    SITE_UNPUBLISHED = "SITE_UNPUBLISHED"
    ACCESS_DENIED = "ACCESS_DENIED"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    DATABASE_ERROR = "DATABASE_ERROR"
    MIDDLEWARE_ERROR = "MIDDLEWARE_ERROR"
    DEVELOPMENT = "DEVELOPMENT"
    IMPERSONATION_ACCESS = "IMPERSONATION_ACCESS"
    ADMIN = "ADMIN"


# ─── Viewers & Membership ────────────────────────────────


class MembershipRole(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"
    OWNER = "owner"


class Membership(BaseModel):
    model_config = ConfigDict(extra="ignore")

    site_id: str
    user_id: str
    role: MembershipRole
    is_active: bool = True


class AuthUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str | None = None


class Viewer(BaseModel):
    user: AuthUser | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def user_id(self) -> str | None:
        return self.user.id if self.user else None


class ViewerAccess(BaseModel):
    viewer: Viewer
    role: MembershipRole | None = None
    can_view_unpublished: bool = False


# ─── Tenant Context ──────────────────────────────────────


class TenantContext(BaseModel):
    """Resolved identity of the tenant for the current request."""

    site_id: str
    subdomain: str
    custom_domain: str | None = None
    site_name: str | None = None
    hostname: str | None = None
    cache_hit: bool = False
    latency_ms: float = 0.0

    @classmethod
    def from_site(
        cls,
        site: SiteRecord,
        hostname: str,
        cache_hit: bool = False,
        latency_ms: float = 0.0,
    ) -> TenantContext:
        return cls(
            site_id=site.id,
            subdomain=site.subdomain,
            custom_domain=site.custom_domain,
            site_name=site.name,
            hostname=hostname,
            cache_hit=cache_hit,
            latency_ms=latency_ms,
        )


class ImpersonationContext(BaseModel):
    """Admin impersonation session as returned by `get_impersonation_context`."""

    model_config = ConfigDict(extra="ignore")

    valid: bool
    session_id: str
    admin_user_id: str
    admin_email: str | None = None
    site_id: str
    site_name: str
    site_subdomain: str
    site_custom_domain: str | None = None

    def to_site(self) -> SiteRecord:
        return SiteRecord(
            id=self.site_id,
            name=self.site_name,
            subdomain=self.site_subdomain,
            custom_domain=self.site_custom_domain,
            is_published=True,
            is_active=True,
        )


# ─── Request ─────────────────────────────────────────────


class RequestContext(BaseModel):
    """Framework-neutral view of an inbound request."""

    method: str = "GET"
    scheme: str = "https"
    host: str = ""  # raw host as received, port included
    hostname: str = ""  # normalized: lower-cased, port stripped
    path: str = "/"
    query: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    cookies: dict[str, str] = Field(default_factory=dict)
    client_ip: str | None = None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())
