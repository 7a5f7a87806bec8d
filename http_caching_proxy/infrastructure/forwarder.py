from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp
from multidict import CIMultiDict
from yarl import URL

from http_caching_proxy.application.ports import BackendResponse
from http_caching_proxy.domain.entry import HeaderPairs, header_pairs
from http_caching_proxy.domain.errors import BackendRequestError
from http_caching_proxy.domain.headers import end_to_end_headers

logger = logging.getLogger(__name__)


class AiohttpForwarder:
    """Replays an inbound request against the backend named by its URL.

    Redirects are returned rather than followed and nothing is retried. The
    body is read completely and kept compressed if the backend compressed it,
    so it can be stored and replayed byte for byte.
    """

    def __init__(self, timeout: Optional[aiohttp.ClientTimeout] = None):
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            kwargs = {}
            if self._timeout is not None:
                kwargs["timeout"] = self._timeout
            self._session = aiohttp.ClientSession(
                auto_decompress=False,
                trust_env=False,
                skip_auto_headers=("Accept-Encoding", "User-Agent"),
                **kwargs,
            )
        return self._session

    async def forward(
        self, method: str, url: str, headers: HeaderPairs, body: bytes
    ) -> BackendResponse:
        target = URL(url, encoded=True)
        if not target.is_absolute():
            raise BackendRequestError(f"Cannot forward {method} {url}: not an absolute URL")

        session = self._get_session()
        try:
            async with session.request(
                method,
                target,
                headers=CIMultiDict(end_to_end_headers(headers)),
                data=body or None,
                allow_redirects=False,
            ) as resp:
                payload = await resp.read()
                logger.debug("Got response for %s %s -> %s", method, url, resp.status)
                return BackendResponse(
                    status=resp.status,
                    headers=header_pairs(resp.headers.items()),
                    body=payload,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise BackendRequestError(f"{method} {url} failed: {exc!r}") from exc

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
