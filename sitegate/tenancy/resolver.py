"""
SiteResolverChain — turns a site-domain hostname into a lookup key.

Chain of responsibility: tries each resolver in order, first resolver that
claims the host wins (its answer may still be "invalid"). Resolvers are
pure; the datastore is only consulted later, by the lookup service.
"""

from __future__ import annotations

import re
from typing import Protocol

from sitegate.config import Settings
from sitegate.models import LookupKind, SiteResolution
from sitegate.tenancy.hostname import is_dev_subdomain_host, normalize_host

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_IP_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")

RESERVED_SUBDOMAINS = frozenset({
    "www",
    "api",
    "app",
    "admin",
    "dashboard",
    "auth",
    "mail",
    "smtp",
    "ftp",
    "cdn",
    "static",
    "assets",
    "status",
    "support",
    "help",
    "docs",
    "blog",
    "staging",
    "dev",
    "test",
})


def is_valid_subdomain(label: str) -> bool:
    """DNS label syntax: lowercase alnum + hyphen, 1-63 chars, no edge hyphen."""
    return bool(_LABEL_RE.match(label))


def is_reserved_subdomain(label: str) -> bool:
    return label in RESERVED_SUBDOMAINS


def is_available_subdomain(label: str) -> bool:
    """A label a new site could be created under."""
    return is_valid_subdomain(label) and not is_reserved_subdomain(label)


def is_valid_custom_domain(domain: str) -> bool:
    """RFC 1035-style fully-qualified domain check."""
    if not domain or len(domain) > 253 or _IP_RE.match(domain):
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    if not all(_LABEL_RE.match(label) for label in labels):
        return False
    return not labels[-1].isdigit()


class SiteResolver(Protocol):
    """Interface for site resolvers."""

    @property
    def name(self) -> str: ...

    def resolve(self, hostname: str) -> SiteResolution | None:
        """None means "not mine", an invalid resolution means "mine, but bad"."""
        ...


class SiteResolverChain:
    def __init__(self, resolvers: list[SiteResolver]) -> None:
        self._resolvers = resolvers

    def resolve(self, host: str) -> SiteResolution:
        """Try each resolver in order. Unclaimed hosts are invalid."""
        hostname = normalize_host(host)
        if not hostname:
            return SiteResolution.invalid()

        for resolver in self._resolvers:
            resolution = resolver.resolve(hostname)
            if resolution is not None:
                return resolution
        return SiteResolution.invalid()

    @property
    def resolver_names(self) -> list[str]:
        return [r.name for r in self._resolvers]


# ─── Built-in Resolvers ──────────────────────────────────


class SubdomainResolver:
    """Resolves `<label>.<suffix>` (e.g., acme.blooms.cc → 'acme')."""

    def __init__(self, suffix: str, app_domain: str | None = None) -> None:
        self._suffix = f".{suffix.lower().lstrip('.')}"
        self._app_domain = (app_domain or "").lower()

    @property
    def name(self) -> str:
        return "subdomain"

    def resolve(self, hostname: str) -> SiteResolution | None:
        if not hostname.endswith(self._suffix) or hostname == self._app_domain:
            return None

        label = hostname[: -len(self._suffix)]
        # Anything under the platform suffix is ours; multi-level or
        # malformed labels are invalid rather than custom domains.
        if not is_valid_subdomain(label):
            return SiteResolution.invalid()
        return SiteResolution(is_valid=True, kind=LookupKind.SUBDOMAIN, value=label)


class DevSubdomainResolver:
    """Resolves `<label>.localhost` while developing locally."""

    @property
    def name(self) -> str:
        return "dev-subdomain"

    def resolve(self, hostname: str) -> SiteResolution | None:
        if not is_dev_subdomain_host(hostname):
            return None

        label = hostname[: -len(".localhost")]
        if not is_valid_subdomain(label):
            return SiteResolution.invalid()
        return SiteResolution(is_valid=True, kind=LookupKind.SUBDOMAIN, value=label)


class CustomDomainResolver:
    """Resolves any other valid FQDN as a tenant-owned custom domain."""

    def __init__(self, excluded: list[str] | None = None) -> None:
        self._excluded = {d.lower() for d in excluded or []}

    @property
    def name(self) -> str:
        return "custom-domain"

    def resolve(self, hostname: str) -> SiteResolution | None:
        if hostname in self._excluded or not is_valid_custom_domain(hostname):
            return None
        return SiteResolution(is_valid=True, kind=LookupKind.CUSTOM_DOMAIN, value=hostname)


def build_resolver_chain(settings: Settings) -> SiteResolverChain:
    """Standard chain: dev previews, platform subdomains, then custom domains."""
    return SiteResolverChain([
        DevSubdomainResolver(),
        SubdomainResolver(settings.SITE_DOMAIN_SUFFIX, app_domain=settings.APP_DOMAIN),
        CustomDomainResolver(excluded=[settings.APP_DOMAIN, *settings.APP_DOMAIN_ALIASES]),
    ])
