"""
Supabase adapters (PostgREST + GoTrue) for the site store and auth provider.

Only the three reads the pipeline needs are implemented here; site
provisioning and membership management live elsewhere.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from sitegate.models import (
    AuthUser,
    ImpersonationContext,
    LookupKind,
    Membership,
    RequestContext,
    SiteRecord,
)
from sitegate.store.errors import (
    AuthProviderError,
    DatastoreError,
    DatastoreTimeoutError,
    MalformedRecordError,
)

logger = logging.getLogger(__name__)

SITES_TABLE = "sites"
MEMBERSHIPS_TABLE = "site_memberships"
IMPERSONATION_RPC = "get_impersonation_context"

_AUTH_COOKIE = "sb-access-token"


class SupabaseSiteStore:
    """SiteStore backed by PostgREST with the service role key."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._rest_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self._service_role_key = service_role_key
        self._client = http_client

    def _headers(self) -> dict[str, str]:
        # Never log these headers.
        return {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Accept": "application/json",
        }

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(
                method, f"{self._rest_url}/{path}", headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as exc:
            raise DatastoreTimeoutError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise DatastoreError(f"{method} {path} failed: {exc.__class__.__name__}") from exc

        if resp.status_code >= 400:
            message = resp.text
            try:
                payload = resp.json()
                if isinstance(payload, dict):
                    message = payload.get("message") or message
            except ValueError:
                pass
            raise DatastoreError(message, status_code=resp.status_code)

        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedRecordError(f"{method} {path} returned non-JSON body") from exc

    async def _select(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        rows = await self._send("GET", table, params=params)
        if not isinstance(rows, list):
            raise MalformedRecordError(f"expected a list of rows from {table}")
        return rows

    async def find_active_site_by(self, kind: LookupKind, value: str) -> SiteRecord | None:
        rows = await self._select(
            SITES_TABLE,
            {
                "select": "*",
                kind.value: f"eq.{value}",
                "is_active": "eq.true",
                "limit": "2",
            },
        )
        if not rows:
            return None
        if len(rows) > 1:
            raise DatastoreError(f"more than one active site owns {kind.value}={value}")
        try:
            return SiteRecord.model_validate(rows[0])
        except ValidationError as exc:
            raise MalformedRecordError(f"site row for {kind.value}={value} is malformed") from exc

    async def find_membership(self, user_id: str, site_id: str) -> Membership | None:
        rows = await self._select(
            MEMBERSHIPS_TABLE,
            {
                "select": "site_id,user_id,role,is_active",
                "user_id": f"eq.{user_id}",
                "site_id": f"eq.{site_id}",
                "limit": "1",
            },
        )
        if not rows:
            return None
        try:
            return Membership.model_validate(rows[0])
        except ValidationError as exc:
            raise MalformedRecordError("membership row is malformed") from exc

    async def get_impersonation_context(self, token: str) -> ImpersonationContext | None:
        data = await self._send("POST", f"rpc/{IMPERSONATION_RPC}", json={"token": token})
        if not isinstance(data, dict) or not data.get("valid"):
            return None
        try:
            return ImpersonationContext.model_validate(data)
        except ValidationError as exc:
            raise MalformedRecordError("impersonation context is malformed") from exc


# ─── Auth ────────────────────────────────────────────────


def extract_access_token(request: RequestContext) -> str | None:
    """Find the Supabase session token on a request.

    Checks the bearer header, the legacy `sb-access-token` cookie and the
    `sb-<project>-auth-token` cookie written by @supabase/ssr.
    """
    auth = request.header("authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth[7:].strip() or None

    token = request.cookies.get(_AUTH_COOKIE)
    if token:
        return token

    for name, value in request.cookies.items():
        if name.startswith("sb-") and name.endswith("-auth-token"):
            return _token_from_session_cookie(value)
    return None


def _token_from_session_cookie(value: str) -> str | None:
    raw = value
    if raw.startswith("base64-"):
        try:
            raw = base64.urlsafe_b64decode(raw[7:] + "=" * (-len(raw[7:]) % 4)).decode()
        except (ValueError, UnicodeDecodeError):
            return None
    try:
        session = json.loads(raw)
    except ValueError:
        return None
    if isinstance(session, dict):
        token = session.get("access_token")
    elif isinstance(session, list) and session:
        token = session[0]
    else:
        token = None
    return token if isinstance(token, str) and token else None


class SupabaseAuthProvider:
    """AuthProvider that asks GoTrue who owns the session token."""

    def __init__(
        self,
        *,
        supabase_url: str,
        anon_key: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        self._user_url = f"{supabase_url.rstrip('/')}/auth/v1/user"
        self._anon_key = anon_key
        self._client = http_client

    async def get_current_user(self, request: RequestContext) -> AuthUser | None:
        token = extract_access_token(request)
        if not token:
            return None

        try:
            resp = await self._client.get(
                self._user_url,
                headers={"apikey": self._anon_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise AuthProviderError(f"auth provider unreachable: {exc.__class__.__name__}") from exc

        # Expired or revoked sessions are simply anonymous
        if resp.status_code in (401, 403):
            return None
        if resp.status_code >= 400:
            raise AuthProviderError(f"auth provider returned {resp.status_code}")

        try:
            return AuthUser.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise AuthProviderError("auth provider returned a malformed user") from exc
