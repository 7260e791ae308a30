"""
sitegate — FastAPI application.

Tenant resolution middleware + cache admin endpoints + a stand-in render
route that echoes the tenant context it was handed.
"""

from __future__ import annotations

import hmac
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from sitegate.config import Settings, get_settings
from sitegate.logging_config import setup_logging
from sitegate.middleware import TenantResolutionMiddleware
from sitegate.models import LookupKey, LookupKind, SiteRecord, TenantContext
from sitegate.store import (
    AuthProvider,
    DatastoreError,
    InMemoryAuthProvider,
    InMemorySiteStore,
    SiteStore,
    SupabaseAuthProvider,
    SupabaseSiteStore,
)
from sitegate.tenancy.cache import (
    SiteCache,
    cache_ttl_for,
    create_site_cache,
    invalidate_site,
    warmup,
)
from sitegate.tenancy.pipeline import TenantPipeline

# ─── Request/Response models ─────────────────────────────


class HealthResponse(BaseModel):
    status: str
    cache: dict[str, Any]


class InvalidateRequest(BaseModel):
    kind: LookupKind
    value: str


class InvalidateResponse(BaseModel):
    kind: LookupKind
    value: str
    invalidated: bool


class ClearResponse(BaseModel):
    cleared: int


class WarmupRequest(BaseModel):
    keys: list[LookupKey]


class WarmupResponse(BaseModel):
    written: int
    missing: list[LookupKey]


class RenderResponse(BaseModel):
    path: str
    tenant: TenantContext | None = None


# ─── App setup ────────────────────────────────────────────


def create_app(
    settings: Settings | None = None,
    store: SiteStore | None = None,
    auth: AuthProvider | None = None,
    cache: SiteCache | None = None,
) -> FastAPI:
    """Create the FastAPI app; collaborators default to what settings describe."""
    settings = settings or get_settings()

    http_client: httpx.AsyncClient | None = None
    if (store is None or auth is None) and settings.SUPABASE_URL:
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(2.0))

    if store is None:
        if http_client is not None:
            store = SupabaseSiteStore(
                supabase_url=settings.SUPABASE_URL,
                service_role_key=settings.SUPABASE_SERVICE_ROLE_KEY,
                http_client=http_client,
            )
        else:
            store = InMemorySiteStore()

    if auth is None:
        if http_client is not None:
            auth = SupabaseAuthProvider(
                supabase_url=settings.SUPABASE_URL,
                anon_key=settings.SUPABASE_ANON_KEY or settings.SUPABASE_SERVICE_ROLE_KEY,
                http_client=http_client,
            )
        else:
            auth = InMemoryAuthProvider()

    if cache is None:
        cache = create_site_cache(settings)
    pipeline = TenantPipeline.build(settings, store=store, auth=auth, cache=cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield

        await pipeline.close()
        if http_client is not None:
            await http_client.aclose()

    app = FastAPI(
        title="sitegate",
        description="Multi-tenant host resolution and tenant context for site domains",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.add_middleware(TenantResolutionMiddleware, pipeline=pipeline)

    def require_admin(x_admin_token: str = Header(default="")) -> None:
        expected = settings.ADMIN_API_TOKEN
        if not expected:
            raise HTTPException(403, "Admin API disabled")
        if not hmac.compare_digest(x_admin_token, expected):
            raise HTTPException(401, "Invalid admin token")

    # ─── Routes ───────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="ok", cache=await cache.stats())

    # ─── Cache admin ──────────────────────────────────

    @app.get("/admin/cache/stats", dependencies=[Depends(require_admin)])
    async def cache_stats() -> dict[str, Any]:
        return await cache.stats()

    @app.post(
        "/admin/cache/invalidate",
        response_model=InvalidateResponse,
        dependencies=[Depends(require_admin)],
    )
    async def invalidate(req: InvalidateRequest):
        value = req.value.strip().lower()
        cached = await cache.get(req.kind, value)
        if cached is not None:
            # The site may also be cached under its other lookup key
            await invalidate_site(cache, cached)
        else:
            await cache.delete(req.kind, value)
        return InvalidateResponse(kind=req.kind, value=value, invalidated=cached is not None)

    @app.post("/admin/cache/clear", response_model=ClearResponse, dependencies=[Depends(require_admin)])
    async def clear():
        return ClearResponse(cleared=await cache.clear())

    @app.post(
        "/admin/cache/warmup",
        response_model=WarmupResponse,
        dependencies=[Depends(require_admin)],
    )
    async def warm(req: WarmupRequest):
        """Preload sites by lookup key, e.g. the busiest ones after a deploy."""
        sites: list[SiteRecord] = []
        missing: list[LookupKey] = []
        for key in req.keys:
            value = key.value.strip().lower()
            try:
                site = await store.find_active_site_by(key.kind, value)
            except DatastoreError as exc:
                raise HTTPException(503, f"Datastore unavailable: {exc}") from exc
            if site is None:
                missing.append(LookupKey(kind=key.kind, value=value))
            else:
                sites.append(site)

        written = await warmup(cache, sites, ttl_for=lambda kind: cache_ttl_for(kind, settings))
        return WarmupResponse(written=written, missing=missing)

    # ─── Render stand-in ──────────────────────────────

    @app.api_route(
        "/{path:path}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        response_model=RenderResponse,
    )
    async def render(path: str, request: Request):
        """
        Stand-in for the render layer. Reads the tenant the same way a real
        renderer would: from the propagated request headers.
        """
        tenant = pipeline.propagator.read({}, request.headers)
        return RenderResponse(path=f"/{path}", tenant=tenant)

    return app


# ─── Entry point ──────────────────────────────────────────


def main():
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
