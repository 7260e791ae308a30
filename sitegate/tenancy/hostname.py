"""
Hostname classification.

Every function here is pure and total: malformed input never raises, it
falls through to SITE_DOMAIN so the resolver can reject it explicitly.
"""

from __future__ import annotations

from typing import Mapping

from sitegate.config import Settings
from sitegate.models import HostKind

_DEV_MARKERS = ("localhost", "127.0.0.1")
_FORWARDED_HEADERS = ("x-forwarded-host", "x-original-host")


def normalize_host(raw: str | None) -> str:
    """Lower-case a Host value and strip any port."""
    if not raw:
        return ""
    host = raw.strip().lower()

    # Bracketed IPv6 literal, e.g. [::1]:3000
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end > 0 else host[1:]

    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def extract_host(headers: Mapping[str, str], trust_forwarded: bool = True) -> str:
    """Raw host (port included) as the client addressed it."""
    candidates = list(_FORWARDED_HEADERS) if trust_forwarded else []
    candidates.append("host")

    for name in candidates:
        value = headers.get(name)
        if value:
            # Proxies may append: "a.example, b.internal"
            return value.split(",")[0].strip()
    return ""


def is_development_host(hostname: str) -> bool:
    return any(marker in hostname for marker in _DEV_MARKERS) or hostname.endswith(".local")


def is_dev_subdomain_host(hostname: str) -> bool:
    """`acme.localhost` style hosts used to preview a site locally."""
    if not hostname.endswith(".localhost"):
        return False
    label = hostname[: -len(".localhost")]
    return bool(label) and label != "localhost"


def is_local_main_host(hostname: str) -> bool:
    return hostname in ("localhost", "127.0.0.1")


def is_main_app_host(hostname: str, settings: Settings) -> bool:
    if hostname == settings.APP_DOMAIN or hostname in settings.APP_DOMAIN_ALIASES:
        return True
    return any(
        suffix and hostname.endswith(suffix) for suffix in settings.PREVIEW_DOMAIN_SUFFIXES
    )


def classify(host: str | None, settings: Settings) -> HostKind:
    """Map a raw request host to development / main application / site domain."""
    hostname = normalize_host(host)
    if not hostname:
        return HostKind.SITE_DOMAIN

    if is_development_host(hostname) or settings.is_development:
        return HostKind.DEVELOPMENT

    if is_main_app_host(hostname, settings):
        return HostKind.MAIN_APPLICATION

    return HostKind.SITE_DOMAIN
