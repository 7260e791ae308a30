"""Datastore and auth provider errors.

Kept free of httpx types so callers never hold on to response objects
(or the service key in their headers).
"""

from __future__ import annotations


class DatastoreError(Exception):
    """The persistent store could not answer the query."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{type(self).__name__}(status={self.status_code}) {self.message}"
        return f"{type(self).__name__} {self.message}"


class DatastoreTimeoutError(DatastoreError):
    """The query did not complete within the lookup budget."""


class MalformedRecordError(DatastoreError):
    """A row came back that does not validate as a site/membership."""


class AuthProviderError(Exception):
    """The auth provider failed; callers treat this as "no user"."""
