from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from http_caching_proxy.application.request_context import request_id_var

# Attributes ProxyCoordinator attaches to its per-request record through ``extra``.
EXCHANGE_FIELDS = ("method", "url", "status", "outcome", "duration_ms")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(request_id)s - %(message)s"


class RequestIdFilter(logging.Filter):
    """Stamps records with the id of the proxied request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Records about a proxied exchange also carry its method, url, status,
    cache outcome and duration as top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        for field in EXCHANGE_FIELDS:
            if hasattr(record, field):
                payload[field] = getattr(record, field)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(log_level: str, log_format: str = "text") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if log_format.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logging.basicConfig(level=level, handlers=[handler], force=True)

    # The coordinator already logs each exchange with its cache outcome.
    logging.getLogger("aiohttp.access").setLevel(
        logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    )
