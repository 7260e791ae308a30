from .base import AuthProvider, SiteStore
from .errors import (
    AuthProviderError,
    DatastoreError,
    DatastoreTimeoutError,
    MalformedRecordError,
)
from .memory import InMemoryAuthProvider, InMemorySiteStore
from .supabase import SupabaseAuthProvider, SupabaseSiteStore

__all__ = [
    "SiteStore",
    "AuthProvider",
    "DatastoreError",
    "DatastoreTimeoutError",
    "MalformedRecordError",
    "AuthProviderError",
    "InMemorySiteStore",
    "InMemoryAuthProvider",
    "SupabaseSiteStore",
    "SupabaseAuthProvider",
]
