from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from http_caching_proxy.domain.entry import CachedMetadata, CacheEntry
from http_caching_proxy.domain.errors import CacheEntryNotFound, CacheReadError

logger = logging.getLogger(__name__)

INDEX_DIR = "index"
CONTENT_DIR = "content"


class _StoredMetadata(BaseModel):
    status_code: int = Field(ge=100, le=999)
    headers: list[tuple[str, str]]
    created_at: int


class _IndexRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    integrity: str
    size: int = Field(ge=0)
    metadata: _StoredMetadata


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".tmp_{path.name}_")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


class DiskCacheStore:
    """Content-addressed cache directory.

    Each key owns one JSON index file named after the sha256 of the key. The
    index records the key, the response metadata and the sha256 of the body;
    bodies live under ``content/`` named by their digest, so identical bodies
    are stored once. A put writes the body before the index and replaces both
    with ``os.replace``, which makes the new entry visible all at once.
    """

    def __init__(self, cache_path: str | os.PathLike[str]):
        self.cache_path = Path(cache_path)

    def _index_path(self, key: str) -> Path:
        return self.cache_path / INDEX_DIR / f"{_sha256(key.encode('utf-8'))}.json"

    def _content_path(self, integrity: str) -> Path:
        return self.cache_path / CONTENT_DIR / integrity[:2] / integrity

    def get(self, key: str) -> CacheEntry:
        index_path = self._index_path(key)
        try:
            raw_index = index_path.read_bytes()
        except FileNotFoundError:
            raise CacheEntryNotFound(key) from None

        try:
            record = _IndexRecord.model_validate_json(raw_index)
        except ValidationError as exc:
            raise CacheReadError(f"Corrupt index record {index_path}") from exc

        if record.key != key:
            logger.debug("Index %s belongs to %r, not %r", index_path, record.key, key)
            raise CacheEntryNotFound(key)

        content_path = self._content_path(record.integrity)
        try:
            body = content_path.read_bytes()
        except FileNotFoundError as exc:
            raise CacheReadError(f"Missing content {content_path} for {key!r}") from exc

        if len(body) != record.size or _sha256(body) != record.integrity:
            raise CacheReadError(f"Integrity check failed for {key!r}")

        metadata = CachedMetadata(
            status_code=record.metadata.status_code,
            headers=tuple(record.metadata.headers),
            created_at=record.metadata.created_at,
        )
        return CacheEntry(body=body, metadata=metadata)

    def put(self, key: str, body: bytes, metadata: CachedMetadata) -> None:
        integrity = _sha256(body)
        # Rewritten even when present so a damaged copy is repaired.
        _write_atomic(self._content_path(integrity), body)

        record = _IndexRecord(
            key=key,
            integrity=integrity,
            size=len(body),
            metadata=_StoredMetadata(
                status_code=metadata.status_code,
                headers=list(metadata.headers),
                created_at=metadata.created_at,
            ),
        )
        _write_atomic(self._index_path(key), record.model_dump_json().encode("utf-8"))
        logger.debug("Stored %r (%d bytes, status %s)", key, len(body), metadata.status_code)
