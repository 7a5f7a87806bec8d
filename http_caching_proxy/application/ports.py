from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from http_caching_proxy.domain.entry import CachedMetadata, CacheEntry, HeaderPairs


@dataclass(frozen=True)
class BackendResponse:
    status: int
    headers: HeaderPairs
    body: bytes


class CacheStorePort(Protocol):
    def get(self, key: str) -> CacheEntry: ...

    def put(self, key: str, body: bytes, metadata: CachedMetadata) -> None: ...


class ForwarderPort(Protocol):
    async def forward(
        self, method: str, url: str, headers: HeaderPairs, body: bytes
    ) -> BackendResponse: ...

    async def close(self) -> None: ...
