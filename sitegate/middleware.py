"""
TenantResolutionMiddleware — runs the tenant pipeline in front of every route.

Sets request.state.tenant_context for downstream handlers and mirrors it into
the downstream request headers. Inbound copies of those headers are dropped
first so a client can never name its own tenant.
"""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from sitegate.logging_config import (
    generate_request_id,
    hostname_ctx,
    request_id_ctx,
    site_id_ctx,
)
from sitegate.models import RequestContext, ResolutionStatus
from sitegate.tenancy.context import CONTEXT_REQUEST_HEADERS, encode_header_value
from sitegate.tenancy.hostname import extract_host, normalize_host
from sitegate.tenancy.outcomes import Decision, Outcome
from sitegate.tenancy.pipeline import TenantPipeline

logger = logging.getLogger(__name__)

_PROXY_IP_HEADERS = ("x-real-ip", "cf-connecting-ip")
_STRIPPED = {name.encode("latin-1") for name in CONTEXT_REQUEST_HEADERS}


def client_ip(request: Request, trusted_proxies: int = 0) -> str | None:
    """
    The address rate limits are keyed on.

    Each trusted proxy appends the address it saw to x-forwarded-for, so the
    entry `trusted_proxies` from the right is the first one a client cannot
    forge. Without trusted proxies the socket peer is the only source.
    """
    peer = request.client.host if request.client else None
    if trusted_proxies < 1:
        return peer

    forwarded = [
        ip.strip() for ip in request.headers.get("x-forwarded-for", "").split(",") if ip.strip()
    ]
    if len(forwarded) >= trusted_proxies:
        return forwarded[-trusted_proxies]
    for name in _PROXY_IP_HEADERS:
        value = request.headers.get(name)
        if value:
            return value.strip()
    return peer


def to_request_context(
    request: Request, trust_forwarded: bool = True, trusted_proxies: int = 0
) -> RequestContext:
    host = extract_host(request.headers, trust_forwarded=trust_forwarded)
    scheme = request.headers.get("x-forwarded-proto") if trust_forwarded else None
    return RequestContext(
        method=request.method,
        scheme=(scheme or request.url.scheme).split(",")[0].strip(),
        host=host,
        hostname=normalize_host(host),
        path=request.url.path,
        query=dict(request.query_params),
        headers={k.lower(): v for k, v in request.headers.items()},
        cookies=dict(request.cookies),
        client_ip=client_ip(request, trusted_proxies),
    )


class TenantResolutionMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, pipeline: TenantPipeline) -> None:
        super().__init__(app)
        self.pipeline = pipeline

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or generate_request_id()
        request_id_ctx.set(request_id)
        site_id_ctx.set("-")

        settings = self.pipeline.settings
        context = to_request_context(
            request,
            trust_forwarded=settings.TRUST_FORWARDED_HOST,
            trusted_proxies=settings.TRUSTED_PROXY_COUNT,
        )
        hostname_ctx.set(context.hostname)

        decision = await self.pipeline.process(context)

        if decision.redirect_url is not None:
            return RedirectResponse(decision.redirect_url, status_code=307)

        if decision.rejection is not None:
            rejection = decision.rejection
            response = JSONResponse(
                rejection.body, status_code=rejection.status_code, headers=rejection.headers
            )
            if decision.clear_context:
                self.pipeline.propagator.clear(response)
            return response

        try:
            self._rewrite_headers(request, decision)
        except Exception:
            logger.exception("Could not propagate tenant context for %s", context.hostname)
            decision = Decision(
                outcome=Outcome.PIPELINE_ERROR, status=ResolutionStatus.MIDDLEWARE_ERROR
            )
            self._rewrite_headers(request, decision)

        request.state.tenant_context = decision.tenant
        if decision.tenant is not None:
            site_id_ctx.set(decision.tenant.site_id)

        response = await call_next(request)
        try:
            self._finalize(response, decision)
        except Exception:
            logger.exception("Could not attach tenant context for %s", context.hostname)
            self._strip_context(response)
        response.headers["x-request-id"] = request_id
        return response

    def _rewrite_headers(self, request: Request, decision: Decision) -> None:
        headers = [(k, v) for k, v in request.scope["headers"] if k not in _STRIPPED]
        if decision.tenant is not None:
            headers.extend(self.pipeline.propagator.request_headers(decision.tenant))
        request.scope["headers"] = headers

    def _finalize(self, response: Response, decision: Decision) -> None:
        propagator = self.pipeline.propagator
        if decision.tenant is not None:
            propagator.attach(response, decision.tenant)
        for name, value in decision.headers.items():
            response.headers[name] = encode_header_value(value)
        for cookie in decision.cookies:
            cookie.set_on(response)
        for name in decision.delete_cookies:
            response.delete_cookie(name, path="/")

    def _strip_context(self, response: Response) -> None:
        """Leave the response as if no tenant had been resolved."""
        for name in CONTEXT_REQUEST_HEADERS:
            if name in response.headers:
                del response.headers[name]
        self.pipeline.propagator.clear(response)
