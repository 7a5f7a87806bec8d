from __future__ import annotations

import argparse
import asyncio
import base64
import json
import os
import sys
from pathlib import Path
from typing import Sequence

from http_caching_proxy.domain.cache_key import cache_key
from http_caching_proxy.domain.entry import DEFAULT_TTL_MS, now_ms
from http_caching_proxy.domain.errors import CacheEntryNotFound
from http_caching_proxy.infrastructure.config import load_options
from http_caching_proxy.infrastructure.disk_store import DiskCacheStore
from http_caching_proxy.infrastructure.logging import configure_logging
from http_caching_proxy.main import serve


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="http-caching-proxy")
    parser.add_argument(
        "--log-level",
        default=os.getenv("PROXY_LOG_LEVEL", "INFO"),
        help="logging level (default: $PROXY_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default=os.getenv("PROXY_LOG_FORMAT", "text"),
        help="log record format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="run the caching proxy")
    serve_parser.add_argument("--cache-path", default=None, help="cache directory (default: $PROXY_CACHE_PATH)")
    serve_parser.add_argument("--ttl", type=int, default=None, help="freshness in milliseconds")
    serve_parser.add_argument("--port", type=int, default=None, help="listen port (0 picks a free one)")
    serve_parser.add_argument("--host", default=None, help="listen address")

    show_parser = subparsers.add_parser("show", help="print a cached response")
    show_parser.add_argument("method", help="request method, e.g. GET")
    show_parser.add_argument("url", help="absolute request URL")
    show_parser.add_argument("--cache-path", required=True, help="cache directory")
    show_parser.add_argument(
        "--ttl",
        type=int,
        default=DEFAULT_TTL_MS,
        help="ttl in milliseconds used to report freshness",
    )
    show_parser.add_argument(
        "--format",
        choices=("base64", "hex", "utf8"),
        default="base64",
        help="output encoding for the body",
    )
    show_parser.add_argument(
        "--output",
        default=None,
        help="write the raw body to a file instead of printing it",
    )

    return parser


def _encode_output(value: bytes, fmt: str) -> str:
    if fmt == "base64":
        return base64.b64encode(value).decode("ascii")
    if fmt == "hex":
        return value.hex()
    if fmt == "utf8":
        return value.decode("utf-8")
    raise ValueError(f"unknown format: {fmt}")


def _show(args: argparse.Namespace) -> int:
    key = cache_key(args.method.upper(), args.url)
    try:
        entry = DiskCacheStore(args.cache_path).get(key)
    except CacheEntryNotFound:
        print(f"not cached: {key}", file=sys.stderr)
        return 1

    metadata = entry.metadata
    payload = {
        "key": key,
        "status_code": metadata.status_code,
        "headers": [list(pair) for pair in metadata.headers],
        "created_at": metadata.created_at,
        "fresh": metadata.is_fresh(args.ttl, now_ms()),
        "size": len(entry.body),
    }
    if args.output:
        Path(args.output).write_bytes(entry.body)
    else:
        payload["body"] = _encode_output(entry.body, args.format)
    print(json.dumps(payload))
    return 0


async def run(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        if args.command == "show":
            return _show(args)

        if args.command == "serve":
            configure_logging(args.log_level.upper(), args.log_format)
            options = load_options(
                cache_path=args.cache_path,
                ttl=args.ttl,
                port=args.port,
                host=args.host,
            )
            await serve(options)
            return 0

        parser.error(f"unknown command: {args.command}")
        return 2
    except Exception as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
