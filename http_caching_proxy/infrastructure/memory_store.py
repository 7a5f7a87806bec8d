from __future__ import annotations

from threading import Lock
from typing import Dict

from http_caching_proxy.domain.entry import CachedMetadata, CacheEntry
from http_caching_proxy.domain.errors import CacheEntryNotFound


class MemoryCacheStore:
    """Process-local store with the same contract as the disk store."""

    def __init__(self) -> None:
        self.store: Dict[str, CacheEntry] = {}
        self.lock = Lock()

    def get(self, key: str) -> CacheEntry:
        with self.lock:
            entry = self.store.get(key)
        if entry is None:
            raise CacheEntryNotFound(key)
        return entry

    def put(self, key: str, body: bytes, metadata: CachedMetadata) -> None:
        entry = CacheEntry(body=bytes(body), metadata=metadata)
        with self.lock:
            self.store[key] = entry

    def __len__(self) -> int:
        with self.lock:
            return len(self.store)
