from __future__ import annotations


def cache_key(method: str, url: str) -> str:
    # Headers and body are not part of the key; requests that differ only
    # there share one entry.
    return f"{method} {url}"
