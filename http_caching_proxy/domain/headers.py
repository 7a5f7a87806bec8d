from __future__ import annotations

from typing import Iterable

from .entry import HeaderPairs

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


def end_to_end_headers(headers: Iterable[tuple[str, str]]) -> HeaderPairs:
    """Drop hop-by-hop headers and Content-Length, keeping order and repeats.

    Besides the fixed hop-by-hop set, any header named in a ``Connection``
    value is dropped too. Whoever writes the message next recomputes its own
    framing.
    """
    pairs = list(headers)
    dropped = set(HOP_BY_HOP_HEADERS)
    dropped.add("content-length")
    for name, value in pairs:
        if name.lower() == "connection":
            dropped.update(token.strip().lower() for token in value.split(",") if token.strip())
    return tuple((name, value) for name, value in pairs if name.lower() not in dropped)
