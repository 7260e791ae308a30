"""
Declarative path classification, consulted once per request.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RouteCategory(str, Enum):
    SKIP = "skip"  # pipeline bypassed entirely
    ADMIN = "admin"  # no tenant resolution, no auth redirect
    AUTH = "auth"  # signed-in users are sent to the dashboard
    PUBLIC = "public"  # no sign-in required on the main app
    PROTECTED = "protected"


class Match(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"


@dataclass(frozen=True)
class RouteRule:
    pattern: str
    match: Match
    category: RouteCategory

    def matches(self, path: str) -> bool:
        if self.match == Match.EXACT:
            return path == self.pattern
        return path.startswith(self.pattern)


ROUTE_TABLE: tuple[RouteRule, ...] = (
    # Framework assets, health checks, well-known URIs
    RouteRule("/_next", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/api/auth", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/api/images", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/api/upload", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/favicon.ico", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/robots.txt", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/sitemap.xml", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/manifest.json", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/.well-known", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/health", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/monitoring", Match.PREFIX, RouteCategory.SKIP),
    RouteRule("/admin", Match.PREFIX, RouteCategory.ADMIN),
    RouteRule("/login", Match.EXACT, RouteCategory.AUTH),
    RouteRule("/signup", Match.EXACT, RouteCategory.AUTH),
    RouteRule("/", Match.EXACT, RouteCategory.PUBLIC),
    RouteRule("/auth/callback", Match.EXACT, RouteCategory.PUBLIC),
    RouteRule("/auth/verify-email", Match.EXACT, RouteCategory.PUBLIC),
    RouteRule("/auth/reset-password", Match.EXACT, RouteCategory.PUBLIC),
    RouteRule("/platform/terms", Match.EXACT, RouteCategory.PUBLIC),
    RouteRule("/platform/privacy", Match.EXACT, RouteCategory.PUBLIC),
    RouteRule("/platform/contact", Match.EXACT, RouteCategory.PUBLIC),
)


def classify_path(path: str, table: tuple[RouteRule, ...] = ROUTE_TABLE) -> RouteCategory:
    """First matching rule wins; unlisted paths are protected."""
    for rule in table:
        if rule.matches(path):
            return rule.category
    return RouteCategory.PROTECTED
