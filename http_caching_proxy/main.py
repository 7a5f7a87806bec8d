from __future__ import annotations

import asyncio
import logging
import os
import signal

from http_caching_proxy.infrastructure.config import ProxyOptions, load_options
from http_caching_proxy.infrastructure.logging import configure_logging
from http_caching_proxy.transport.http.proxy_server import HttpCachingProxy

logger = logging.getLogger(__name__)


async def serve(options: ProxyOptions | None = None) -> None:
    options = options or load_options()

    proxy = HttpCachingProxy(options)
    await proxy.start()
    print(proxy.url, flush=True)

    stop_event = asyncio.Event()

    def _begin_shutdown() -> None:
        logger.info("Received shutdown signal, stopping caching proxy...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _begin_shutdown)

    try:
        await stop_event.wait()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await proxy.stop()


def main() -> None:
    configure_logging(
        os.getenv("PROXY_LOG_LEVEL", "INFO").upper(),
        os.getenv("PROXY_LOG_FORMAT", "text"),
    )
    try:
        options = load_options()
        asyncio.run(serve(options))
    except Exception:
        logger.exception("Failed to start caching proxy")
        raise


if __name__ == "__main__":
    main()
