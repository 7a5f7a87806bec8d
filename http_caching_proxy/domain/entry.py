from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Iterable

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000

HeaderPairs = tuple[tuple[str, str], ...]


def now_ms() -> int:
    return int(time.time() * 1000)


def header_pairs(headers: Iterable[tuple[str, str]]) -> HeaderPairs:
    return tuple((str(name), str(value)) for name, value in headers)


@dataclass(frozen=True)
class CachedMetadata:
    status_code: int
    headers: HeaderPairs
    created_at: int

    def is_fresh(self, ttl_ms: int, now: int) -> bool:
        return now - self.created_at < ttl_ms


@dataclass(frozen=True)
class CacheEntry:
    body: bytes
    metadata: CachedMetadata
