from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from aiohttp import hdrs, web
from multidict import CIMultiDict

from http_caching_proxy.application.coordinator import ErrorObserver, ProxyCoordinator, ProxyRequest
from http_caching_proxy.application.ports import CacheStorePort, ForwarderPort
from http_caching_proxy.application.request_context import request_id_var
from http_caching_proxy.domain.entry import header_pairs
from http_caching_proxy.domain.headers import end_to_end_headers
from http_caching_proxy.infrastructure.config import ProxyOptions
from http_caching_proxy.infrastructure.disk_store import DiskCacheStore
from http_caching_proxy.infrastructure.forwarder import AiohttpForwarder

logger = logging.getLogger(__name__)

NOT_RUNNING_URL = "http://proxy-not-running"
SHUTDOWN_TIMEOUT = 10.0


def log_error(request: ProxyRequest, error: BaseException) -> None:
    logger.error("Cannot proxy %s %s.", request.method, request.url, exc_info=error)


class HttpCachingProxy:
    """HTTP forward proxy that records backend responses and replays them.

    Point an HTTP client at ``url`` as its proxy. Responses are kept under
    ``options.cache_path`` and served from there for ``options.ttl``
    milliseconds. Assign ``on_error`` to change how failed requests are
    reported; the status sent to the client stays the same.
    """

    def __init__(
        self,
        options: ProxyOptions,
        *,
        store: Optional[CacheStorePort] = None,
        forwarder: Optional[ForwarderPort] = None,
        on_error: Optional[ErrorObserver] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.options = options
        self.on_error: ErrorObserver = on_error or log_error
        self.port = 0

        self._store = store if store is not None else DiskCacheStore(options.cache_path)
        self._forwarder = forwarder if forwarder is not None else AiohttpForwarder()
        self._coordinator = ProxyCoordinator(
            self._store,
            self._forwarder,
            ttl_ms=options.ttl,
            on_error=self._observe_error,
            clock=clock,
        )
        self._runner: Optional[web.ServerRunner] = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}" if self.port else NOT_RUNNING_URL

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        if self._runner is not None:
            raise RuntimeError("Proxy is already running")

        server = web.Server(self._handle)
        runner = web.ServerRunner(server, shutdown_timeout=SHUTDOWN_TIMEOUT)
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.options.host, self.options.port)
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise

        self._runner = runner
        self.port = runner.addresses[0][1]
        logger.info("Caching proxy listening on %s (cache at %s)", self.url, self.options.cache_path)

    async def stop(self) -> None:
        if self._runner is None:
            return

        runner = self._runner
        self._runner = None
        self.port = 0

        try:
            await runner.cleanup()
        finally:
            await self._forwarder.close()
        logger.info("Caching proxy stopped")

    async def __aenter__(self) -> "HttpCachingProxy":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _observe_error(self, request: ProxyRequest, error: BaseException) -> None:
        self.on_error(request, error)

    async def _handle(self, request: web.BaseRequest) -> web.StreamResponse:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        try:
            if request.method == hdrs.METH_CONNECT:
                logger.debug("Rejecting CONNECT %s", request.raw_path)
                response = web.Response(status=501)
                response.force_close()
                return response

            proxy_request = ProxyRequest(
                method=request.method,
                url=request.raw_path,
                headers=header_pairs(request.headers.items()),
                body=await request.read(),
            )
            result = await self._coordinator.handle(proxy_request)
            return web.Response(
                status=result.status,
                headers=CIMultiDict(end_to_end_headers(result.headers)),
                body=result.body,
            )
        finally:
            request_id_var.reset(token)
