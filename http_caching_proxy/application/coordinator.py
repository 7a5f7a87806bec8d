from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from http_caching_proxy.domain.cache_key import cache_key
from http_caching_proxy.domain.entry import CachedMetadata, CacheEntry, HeaderPairs, now_ms
from http_caching_proxy.domain.errors import BackendRequestError, CacheEntryNotFound

from .ports import CacheStorePort, ForwarderPort

logger = logging.getLogger(__name__)

OUTCOME_HIT = "hit"
OUTCOME_MISS = "miss"
OUTCOME_STALE = "stale"
OUTCOME_ERROR = "error"


@dataclass(frozen=True)
class ProxyRequest:
    method: str
    url: str
    headers: HeaderPairs
    body: bytes = b""


@dataclass(frozen=True)
class ProxyResponse:
    status: int
    headers: HeaderPairs
    body: bytes
    outcome: str


ErrorObserver = Callable[[ProxyRequest, BaseException], None]


class ProxyCoordinator:
    """Serves one proxied request from the cache or from the backend.

    A lookup either yields a fresh entry (served as-is), nothing, or a stale
    entry. In the last two cases the request is forwarded, the response is
    stored under the same key and then returned. Failures after the lookup
    become 502 (backend unreachable) or 500 (anything else); ``on_error`` is
    called with the request and the exception before that response is built.
    """

    def __init__(
        self,
        store: CacheStorePort,
        forwarder: ForwarderPort,
        *,
        ttl_ms: int,
        on_error: ErrorObserver,
        clock: Callable[[], int] | None = None,
    ):
        self._store = store
        self._forwarder = forwarder
        self._ttl_ms = ttl_ms
        self._on_error = on_error
        self._clock = clock or now_ms

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        start_time = time.monotonic()
        try:
            response = await self._handle(request)
        except Exception as exc:
            status = 502 if isinstance(exc, BackendRequestError) else 500
            self._notify(request, exc)
            response = ProxyResponse(status=status, headers=(), body=b"", outcome=OUTCOME_ERROR)

        self._log_request(request, response, (time.monotonic() - start_time) * 1000)
        return response

    def _notify(self, request: ProxyRequest, error: Exception) -> None:
        try:
            self._on_error(request, error)
        except Exception:
            logger.exception("Error hook failed for %s %s", request.method, request.url)

    async def _handle(self, request: ProxyRequest) -> ProxyResponse:
        key = cache_key(request.method, request.url)

        entry = await self._lookup(key)
        if entry is None:
            outcome = OUTCOME_MISS
        elif entry.metadata.is_fresh(self._ttl_ms, self._clock()):
            return ProxyResponse(
                status=entry.metadata.status_code,
                headers=entry.metadata.headers,
                body=entry.body,
                outcome=OUTCOME_HIT,
            )
        else:
            outcome = OUTCOME_STALE

        backend = await self._forwarder.forward(
            request.method, request.url, request.headers, request.body
        )
        metadata = CachedMetadata(
            status_code=backend.status,
            headers=backend.headers,
            created_at=self._clock(),
        )
        await asyncio.to_thread(self._store.put, key, backend.body, metadata)

        return ProxyResponse(
            status=backend.status,
            headers=backend.headers,
            body=backend.body,
            outcome=outcome,
        )

    async def _lookup(self, key: str) -> CacheEntry | None:
        try:
            return await asyncio.to_thread(self._store.get, key)
        except CacheEntryNotFound:
            return None
        except Exception:
            logger.warning("Cannot load cached entry for %r", key, exc_info=True)
            return None

    def _log_request(self, request: ProxyRequest, response: ProxyResponse, duration_ms: float) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "%s %s status=%s duration_ms=%.2f result=%s",
            request.method,
            request.url,
            response.status,
            duration_ms,
            response.outcome.upper(),
            extra={
                "method": request.method,
                "url": request.url,
                "status": response.status,
                "outcome": response.outcome,
                "duration_ms": round(duration_ms, 2),
            },
        )
