from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from http_caching_proxy.domain.entry import DEFAULT_TTL_MS


def get_env_int(
    env_name: str,
    default_value: int,
    *,
    min_value: Optional[int] = None,
    max_value: Optional[int] = None,
) -> int:
    raw_value = os.getenv(env_name)
    if raw_value is None:
        value = default_value
    else:
        try:
            value = int(raw_value)
        except ValueError as exc:
            raise ValueError(
                f"{env_name} must be an integer, got {raw_value!r}"
            ) from exc

    if min_value is not None and value < min_value:
        raise ValueError(f"{env_name} must be >= {min_value}, got {value}")
    if max_value is not None and value > max_value:
        raise ValueError(f"{env_name} must be <= {max_value}, got {value}")
    return value


class ProxyOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    cache_path: str = Field(min_length=1)
    ttl: int = Field(default=DEFAULT_TTL_MS, ge=0)
    port: int = Field(default=0, ge=0, le=65535)
    host: str = "127.0.0.1"


def load_options(**overrides) -> ProxyOptions:
    cache_path = overrides.pop("cache_path", None) or os.getenv("PROXY_CACHE_PATH")
    if not cache_path:
        raise ValueError("PROXY_CACHE_PATH must be set")

    values = dict(
        cache_path=cache_path,
        ttl=get_env_int("PROXY_TTL_MS", DEFAULT_TTL_MS, min_value=0),
        port=get_env_int("PROXY_PORT", 0, min_value=0, max_value=65535),
        host=os.getenv("PROXY_HOST", "127.0.0.1"),
    )
    values.update({name: value for name, value in overrides.items() if value is not None})
    return ProxyOptions(**values)
