from .access import AccessPolicy
from .cache import MemorySiteCache, RedisSiteCache, SiteCache, create_site_cache
from .context import ContextPropagator
from .hostname import classify, extract_host, normalize_host
from .lookup import LookupFailed, SiteFound, SiteLookupService, SiteNotFound
from .outcomes import Decision, Outcome, OutcomeRouter
from .pipeline import TenantPipeline
from .resolver import (
    CustomDomainResolver,
    DevSubdomainResolver,
    SiteResolverChain,
    SubdomainResolver,
    build_resolver_chain,
)
from .routes import RouteCategory, classify_path
from .security import SecurityPolicyFilter

__all__ = [
    "AccessPolicy",
    "SiteCache",
    "MemorySiteCache",
    "RedisSiteCache",
    "create_site_cache",
    "ContextPropagator",
    "classify",
    "extract_host",
    "normalize_host",
    "SiteLookupService",
    "SiteFound",
    "SiteNotFound",
    "LookupFailed",
    "Decision",
    "Outcome",
    "OutcomeRouter",
    "TenantPipeline",
    "SiteResolverChain",
    "SubdomainResolver",
    "DevSubdomainResolver",
    "CustomDomainResolver",
    "build_resolver_chain",
    "RouteCategory",
    "classify_path",
    "SecurityPolicyFilter",
]
