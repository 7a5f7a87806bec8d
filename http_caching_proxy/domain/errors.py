from __future__ import annotations


class ProxyError(Exception):
    """Base class for errors raised by the caching proxy."""


class CacheEntryNotFound(ProxyError, KeyError):
    """No entry is stored under the requested key."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"No cache entry for {self.key!r}"


class CacheReadError(ProxyError):
    """A stored entry exists but cannot be read back."""


class BackendRequestError(ProxyError):
    """The backend could not be reached or the exchange failed mid-way."""
