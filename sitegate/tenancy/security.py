"""
Security policy filter — cross-tenant protections applied after a site is
resolved and before the response is finalized.

Checks, in order:
1. identity claims (cookies / request headers) naming a different site
2. CORS origin
3. per-site, per-client rate limit
4. CSRF double-submit token (optional)
Then attaches security headers. A failed check returns a pre-built
rejection which the pipeline passes through untouched.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sitegate.config import Settings
from sitegate.models import RequestContext, SiteRecord
from sitegate.tenancy.context import (
    COOKIE_SITE_ID,
    COOKIE_SITE_SUBDOMAIN,
    HEADER_SITE_ID,
    HEADER_SITE_SUBDOMAIN,
    ResponseCookie,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
CSRF_TOKEN_MAX_AGE = 24 * 60 * 60


@dataclass
class Rejection:
    """A fully formed error response; never rewritten into a redirect."""

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    clear_context_cookies: bool = False


@dataclass
class SecurityResult:
    success: bool
    rejection: Rejection | None = None
    error: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    cookies: list[ResponseCookie] = field(default_factory=list)


def security_error(
    message: str,
    status_code: int = 403,
    headers: dict[str, str] | None = None,
    clear_context_cookies: bool = False,
) -> Rejection:
    return Rejection(
        status_code=status_code,
        body={
            "error": "Security violation",
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        headers=dict(headers or {}),
        clear_context_cookies=clear_context_cookies,
    )


# ─── Rate limiting ───────────────────────────────────────


@dataclass
class RateLimitDecision:
    limited: bool
    remaining: int
    reset_at: float
    retry_after: int = 0


class RateLimiter(Protocol):
    @property
    def max_requests(self) -> int: ...

    async def hit(self, key: str) -> RateLimitDecision: ...

    async def close(self) -> None: ...


class FixedWindowRateLimiter:
    """Per-key fixed window counter kept in process memory, bounded to `max_keys`."""

    def __init__(
        self,
        window_seconds: int,
        max_requests: int,
        clock: Clock = time.time,
        max_keys: int = 10_000,
    ) -> None:
        if max_keys < 1:
            raise ValueError("max_keys must be positive")
        self._window = window_seconds
        self._max_requests = max_requests
        self._clock = clock
        self._max_keys = max_keys
        self._windows: dict[str, list[float]] = {}  # key → [count, reset_at]

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> int:
        return self._window

    def __len__(self) -> int:
        return len(self._windows)

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now > window[1]:
            if key not in self._windows and len(self._windows) >= self._max_keys:
                self._make_room(now)
            window = [0, now + self._window]
            self._windows[key] = window

        window[0] += 1
        limited = window[0] > self._max_requests
        return RateLimitDecision(
            limited=limited,
            remaining=max(0, self._max_requests - int(window[0])),
            reset_at=window[1],
            retry_after=max(1, int(window[1] - now) + 1) if limited else 0,
        )

    async def close(self) -> None:
        self._windows.clear()

    def _make_room(self, now: float) -> None:
        for key in [k for k, w in self._windows.items() if now > w[1]]:
            self._windows.pop(key, None)
        if len(self._windows) < self._max_keys:
            return

        # Still full of live windows: drop the oldest 10% (at least one)
        count = max(1, self._max_keys // 10)
        oldest = sorted(self._windows.items(), key=lambda item: item[1][1])[:count]
        for key, _ in oldest:
            self._windows.pop(key, None)
        logger.debug("Rate limiter full, evicted %d oldest windows", len(oldest))


class RedisRateLimiter:
    """
    Fixed window counter shared by every instance. INCR creates the key, the
    first hit in a window sets its expiry, and Redis drops it afterwards.

    Redis errors let the request through: the limiter protects capacity, it
    is not an access control.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        window_seconds: int,
        max_requests: int,
        key_prefix: str = "ratelimit:",
        clock: Clock = time.time,
    ) -> None:
        self._redis = client
        self._window = window_seconds
        self._max_requests = max_requests
        self._prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_url(
        cls, url: str, window_seconds: int, max_requests: int, key_prefix: str = "ratelimit:"
    ) -> RedisRateLimiter:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.2,
            socket_timeout=0.2,
        )
        return cls(client, window_seconds, max_requests, key_prefix=key_prefix)

    @property
    def max_requests(self) -> int:
        return self._max_requests

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        redis_key = f"{self._prefix}{key}"
        try:
            count = int(await self._redis.incr(redis_key))
            if count == 1:
                await self._redis.expire(redis_key, self._window)
            ttl = int(await self._redis.ttl(redis_key))
            if ttl < 0:
                # A crash between INCR and EXPIRE left the key without expiry
                await self._redis.expire(redis_key, self._window)
                ttl = self._window
        except RedisError as exc:
            logger.warning("Rate limiter Redis error for %s, allowing request: %s", key, exc)
            return RateLimitDecision(
                limited=False, remaining=self._max_requests, reset_at=now + self._window
            )

        limited = count > self._max_requests
        return RateLimitDecision(
            limited=limited,
            remaining=max(0, self._max_requests - count),
            reset_at=now + ttl,
            retry_after=max(1, ttl) if limited else 0,
        )

    async def close(self) -> None:
        await self._redis.aclose()


def create_rate_limiter(settings: Settings) -> RateLimiter:
    """Shared limiter when the site cache is shared, in-process otherwise."""
    if settings.CACHE_BACKEND == "redis":
        return RedisRateLimiter.from_url(
            settings.REDIS_URL,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        )
    return FixedWindowRateLimiter(
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
    )


# ─── CSRF ────────────────────────────────────────────────


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _unb64(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def generate_csrf_token(secret_key: str, now: float | None = None) -> str:
    issued = int(now if now is not None else time.time())
    payload = f"{issued}-{secrets.token_hex(8)}".encode()
    signature = hmac.new(secret_key.encode(), payload, hashlib.sha256).digest()
    return f"{_b64(payload)}.{_b64(signature)}"


def verify_csrf_token(token: str, secret_key: str, now: float | None = None) -> bool:
    try:
        payload_part, signature_part = token.split(".")
        payload = _unb64(payload_part)
        signature = _unb64(signature_part)
        issued = int(payload.decode().split("-")[0])
    except ValueError:
        return False

    expected = hmac.new(secret_key.encode(), payload, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, signature):
        return False

    age = (now if now is not None else time.time()) - issued
    return 0 <= age < CSRF_TOKEN_MAX_AGE


# ─── CORS ────────────────────────────────────────────────


def is_origin_allowed(origin: str, allowed_origins: list[str]) -> bool:
    if "*" in allowed_origins:
        return True

    host = origin.split("://", 1)[-1]
    for allowed in allowed_origins:
        if allowed == origin:
            return True
        # Wildcard subdomains, e.g. *.blooms.cc
        if allowed.startswith("*."):
            domain = allowed[2:]
            if host == domain or host.endswith(f".{domain}"):
                return True
    return False


# ─── Filter ──────────────────────────────────────────────


class SecurityPolicyFilter:
    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._settings = settings
        self._rate_limiter = rate_limiter or create_rate_limiter(settings)

    async def close(self) -> None:
        await self._rate_limiter.close()

    async def apply(self, request: RequestContext, site: SiteRecord) -> SecurityResult:
        result = SecurityResult(success=True)

        for check in (
            self._check_identity_claims,
            self._check_cors,
            self._check_rate_limit,
            self._check_csrf,
        ):
            rejection = await check(request, site, result)
            if rejection is not None:
                message = str(rejection.body.get("message"))
                logger.warning(
                    "Security violation on %s for site %s: %s",
                    request.hostname,
                    site.id,
                    message,
                )
                return SecurityResult(success=False, rejection=rejection, error=message)

        result.headers.update(self.security_headers(request, site))
        return result

    # ─── Checks ───────────────────────────────────────

    async def _check_identity_claims(
        self, request: RequestContext, site: SiteRecord, result: SecurityResult
    ) -> Rejection | None:
        claims = (
            ("cookie", request.cookies.get(COOKIE_SITE_ID), site.id),
            ("cookie", request.cookies.get(COOKIE_SITE_SUBDOMAIN), site.subdomain),
            ("header", request.header(HEADER_SITE_ID), site.id),
            ("header", request.header(HEADER_SITE_SUBDOMAIN), site.subdomain),
        )
        for source, claimed, actual in claims:
            if claimed and claimed != actual:
                return security_error(
                    f"Request {source} claims a different site",
                    403,
                    clear_context_cookies=source == "cookie",
                )
        return None

    async def _check_cors(
        self, request: RequestContext, site: SiteRecord, result: SecurityResult
    ) -> Rejection | None:
        origin = request.header("origin")
        allowed = self._settings.CORS_ALLOWED_ORIGINS
        own_origin = f"{request.scheme}://{request.host}"

        if request.method.upper() == "OPTIONS":
            if origin and (origin == own_origin or is_origin_allowed(origin, allowed)):
                result.headers["Access-Control-Allow-Origin"] = origin
            elif "*" in allowed:
                result.headers["Access-Control-Allow-Origin"] = "*"
            result.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
            result.headers["Access-Control-Allow-Headers"] = (
                f"Content-Type, Authorization, {self._settings.CSRF_HEADER_NAME}"
            )
            result.headers["Access-Control-Max-Age"] = str(self._settings.CORS_MAX_AGE)
        elif origin and origin != own_origin:
            if not is_origin_allowed(origin, allowed):
                return security_error(f"Origin {origin} not allowed", 403)
            result.headers["Access-Control-Allow-Origin"] = origin

        if self._settings.CORS_ALLOW_CREDENTIALS:
            result.headers["Access-Control-Allow-Credentials"] = "true"
        return None

    async def _check_rate_limit(
        self, request: RequestContext, site: SiteRecord, result: SecurityResult
    ) -> Rejection | None:
        if not self._settings.RATE_LIMIT_ENABLED:
            return None

        decision = await self._rate_limiter.hit(f"{site.id}:{request.client_ip or 'unknown'}")
        headers = {
            "X-RateLimit-Limit": str(self._rate_limiter.max_requests),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(int(decision.reset_at)),
        }
        if decision.limited:
            return security_error(
                "Rate limit exceeded",
                429,
                headers={**headers, "Retry-After": str(decision.retry_after)},
            )

        result.headers.update(headers)
        return None

    async def _check_csrf(
        self, request: RequestContext, site: SiteRecord, result: SecurityResult
    ) -> Rejection | None:
        settings = self._settings
        if not settings.CSRF_PROTECTION:
            return None

        if request.method.upper() in _SAFE_METHODS:
            # Hand out a token for the next unsafe request
            result.cookies.append(
                ResponseCookie(
                    name=settings.CSRF_COOKIE_NAME,
                    value=generate_csrf_token(settings.SECRET_KEY),
                    max_age=CSRF_TOKEN_MAX_AGE,
                    secure=settings.secure_cookies,
                    samesite="strict",
                )
            )
            return None

        from_header = request.header(settings.CSRF_HEADER_NAME)
        from_cookie = request.cookies.get(settings.CSRF_COOKIE_NAME)
        if not from_header or not from_cookie:
            return security_error("CSRF token missing", 403)
        if not hmac.compare_digest(from_header, from_cookie):
            return security_error("CSRF token mismatch", 403)
        if not verify_csrf_token(from_header, settings.SECRET_KEY):
            return security_error("CSRF token invalid", 403)
        return None

    # ─── Headers ──────────────────────────────────────

    def security_headers(self, request: RequestContext, site: SiteRecord) -> dict[str, str]:
        settings = self._settings
        headers: dict[str, str] = {}

        if settings.is_production:
            headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        img_src = ["'self'", "data:", "https:"]
        if site.custom_domain:
            img_src.append(f"https://{site.custom_domain}")
        # The dashboard on the main domain frames sites for live preview
        frame_ancestors = ["'self'", settings.main_app_origin]
        if settings.is_development:
            frame_ancestors += ["http://localhost:*", "http://127.0.0.1:*"]

        headers["Content-Security-Policy"] = "; ".join([
            "default-src 'self'",
            "script-src 'self' 'unsafe-inline' https://js.stripe.com",
            "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
            f"img-src {' '.join(img_src)}",
            "font-src 'self' data: https://fonts.gstatic.com",
            "connect-src 'self' https: wss:",
            "frame-src 'self' https://js.stripe.com https://hooks.stripe.com",
            f"frame-ancestors {' '.join(frame_ancestors)}",
            "base-uri 'self'",
            "form-action 'self'",
        ])

        if request.query.get("_preview_mode") != "iframe":
            headers["X-Frame-Options"] = settings.FRAME_OPTIONS

        headers["X-Content-Type-Options"] = "nosniff"
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        return headers
