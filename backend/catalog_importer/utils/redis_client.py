"""Redis client factory with TLS handling for Upstash and other hosted providers."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis
from redis.exceptions import RedisError


def normalize_redis_url(url: str) -> str:
    # Upstash only accepts TLS, even when handed a redis:// URL.
    if ".upstash.io" in url and url.startswith("redis://"):
        return url.replace("redis://", "rediss://", 1)
    return url


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client for progress snapshots and event fan-out.

    Args:
        url: Redis connection URL (redis:// or rediss://)
        **kwargs: Extra ``Redis.from_url`` options (decode_responses, timeouts)

    Returns:
        Configured Redis client; certificate checks are disabled for TLS URLs.
    """
    url = normalize_redis_url(url)
    kwargs.setdefault("socket_connect_timeout", 2)
    kwargs.setdefault("socket_timeout", 5)
    client = Redis.from_url(url, **kwargs)

    if url.startswith("rediss://"):
        pool_kwargs = getattr(client.connection_pool, "connection_kwargs", None)
        if pool_kwargs is not None:
            pool_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client


def redis_available(client: Redis) -> bool:
    try:
        return bool(client.ping())
    except RedisError:
        return False
