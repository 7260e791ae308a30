"""
ContextPropagator — hands the resolved tenant to the render layer.

Writes the site identity into short-lived, host-scoped cookies (for later
requests) and mirrored response headers (for this one). Setting the same
context twice yields the same cookies and headers.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Literal, Mapping
from urllib.parse import quote, unquote

from starlette.responses import Response

from sitegate.models import TenantContext

logger = logging.getLogger(__name__)

COOKIE_SITE_ID = "x-site-id"
COOKIE_SITE_SUBDOMAIN = "x-site-subdomain"
COOKIE_SITE_CUSTOM_DOMAIN = "x-site-custom-domain"
COOKIE_SITE_SIGNATURE = "x-site-sig"
COOKIE_DEV_SUBDOMAIN = "x-dev-subdomain"

HEADER_SITE_ID = "x-site-id"
HEADER_SITE_SUBDOMAIN = "x-site-subdomain"
HEADER_SITE_CUSTOM_DOMAIN = "x-site-custom-domain"
HEADER_SITE_NAME = "x-site-name"
HEADER_HOSTNAME = "x-hostname"

CONTEXT_COOKIES = (
    COOKIE_SITE_ID,
    COOKIE_SITE_SUBDOMAIN,
    COOKIE_SITE_CUSTOM_DOMAIN,
    COOKIE_SITE_SIGNATURE,
)
# Inbound copies of these are never trusted
CONTEXT_REQUEST_HEADERS = (
    HEADER_SITE_ID,
    HEADER_SITE_SUBDOMAIN,
    HEADER_SITE_CUSTOM_DOMAIN,
    HEADER_SITE_NAME,
    HEADER_HOSTNAME,
)

# Everything printable in ASCII except "%" goes out as-is
_HEADER_SAFE = "".join(c for c in map(chr, range(0x20, 0x7F)) if c != "%")


def encode_header_value(value: str) -> str:
    """Percent-encode anything a latin-1 header can't carry (site names are free text)."""
    return quote(value, safe=_HEADER_SAFE)


def _decoded(value: str | None) -> str | None:
    return unquote(value) if value else value


@dataclass(frozen=True)
class ResponseCookie:
    name: str
    value: str
    max_age: int
    secure: bool = False
    httponly: bool = True
    samesite: Literal["lax", "strict", "none"] = "lax"

    def set_on(self, response: Response) -> None:
        response.set_cookie(
            self.name,
            self.value,
            max_age=self.max_age,
            path="/",
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )


def drop_cookies(response: Response, names: tuple[str, ...]) -> None:
    """Remove pending Set-Cookie headers for `names` (in place)."""
    prefixes = tuple(f"{name}=".encode("latin-1") for name in names)
    response.raw_headers[:] = [
        (key, value)
        for key, value in response.raw_headers
        if not (key == b"set-cookie" and value.startswith(prefixes))
    ]


class ContextPropagator:
    def __init__(self, max_age: int, secure: bool, secret_key: str = "") -> None:
        self._max_age = max_age
        self._secure = secure
        self._secret_key = secret_key

    def cookie(self, name: str, value: str) -> ResponseCookie:
        return ResponseCookie(name=name, value=value, max_age=self._max_age, secure=self._secure)

    def cookies_for(self, context: TenantContext) -> list[ResponseCookie]:
        cookies = [
            self.cookie(COOKIE_SITE_ID, context.site_id),
            self.cookie(COOKIE_SITE_SUBDOMAIN, context.subdomain),
        ]
        if context.custom_domain:
            cookies.append(self.cookie(COOKIE_SITE_CUSTOM_DOMAIN, context.custom_domain))
        if self._secret_key:
            cookies.append(self.cookie(COOKIE_SITE_SIGNATURE, self.sign(context)))
        return cookies

    def headers_for(self, context: TenantContext) -> dict[str, str]:
        headers = {
            HEADER_SITE_ID: context.site_id,
            HEADER_SITE_SUBDOMAIN: context.subdomain,
        }
        if context.site_name:
            headers[HEADER_SITE_NAME] = context.site_name
        if context.hostname:
            headers[HEADER_HOSTNAME] = context.hostname
        if context.custom_domain:
            headers[HEADER_SITE_CUSTOM_DOMAIN] = context.custom_domain
        return {name: encode_header_value(value) for name, value in headers.items()}

    def attach(self, response: Response, context: TenantContext) -> None:
        drop_cookies(response, CONTEXT_COOKIES)
        for cookie in self.cookies_for(context):
            cookie.set_on(response)

        # A custom domain removed since the last visit must not linger
        if not context.custom_domain:
            response.delete_cookie(COOKIE_SITE_CUSTOM_DOMAIN, path="/")

        for name, value in self.headers_for(context).items():
            response.headers[name] = value
        response.headers["X-Cache-Status"] = "hit" if context.cache_hit else "miss"
        response.headers["X-Response-Time"] = f"{context.latency_ms:.0f}ms"

    def clear(self, response: Response) -> None:
        drop_cookies(response, CONTEXT_COOKIES)
        for name in CONTEXT_COOKIES:
            response.delete_cookie(name, path="/")

    def request_headers(self, context: TenantContext) -> list[tuple[bytes, bytes]]:
        """Headers injected into the downstream request scope."""
        return [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in self.headers_for(context).items()
        ]

    def sign(self, context: TenantContext) -> str:
        message = "|".join([context.site_id, context.subdomain, context.custom_domain or ""])
        return hmac.new(self._secret_key.encode(), message.encode(), hashlib.sha256).hexdigest()

    def read(
        self, cookies: Mapping[str, str], headers: Mapping[str, str] | None = None
    ) -> TenantContext | None:
        """Parse a context written by `attach` (cookies first, then headers)."""
        headers = headers or {}
        site_id = cookies.get(COOKIE_SITE_ID) or _decoded(headers.get(HEADER_SITE_ID))
        subdomain = cookies.get(COOKIE_SITE_SUBDOMAIN) or _decoded(
            headers.get(HEADER_SITE_SUBDOMAIN)
        )
        if not site_id or not subdomain:
            return None

        context = TenantContext(
            site_id=site_id,
            subdomain=subdomain,
            custom_domain=(
                cookies.get(COOKIE_SITE_CUSTOM_DOMAIN)
                or _decoded(headers.get(HEADER_SITE_CUSTOM_DOMAIN))
            ),
            site_name=_decoded(headers.get(HEADER_SITE_NAME)),
            hostname=_decoded(headers.get(HEADER_HOSTNAME)),
        )

        if self._secret_key and COOKIE_SITE_ID in cookies:
            signature = cookies.get(COOKIE_SITE_SIGNATURE, "")
            if not hmac.compare_digest(signature, self.sign(context)):
                logger.warning("Discarding tenant cookies with a bad signature")
                return None
        return context
