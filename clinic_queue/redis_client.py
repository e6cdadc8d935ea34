"""Shared Redis connection.

Redis is optional: without ``REDIS_URL`` live updates stay in-process and
notification requests are only logged.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis

from . import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis(url: Optional[str] = None) -> Optional[redis.Redis]:
    """Get Redis client if configured and reachable."""
    global _redis_client
    url = url or config.REDIS_URL
    if not url:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(url, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            _redis_client = None

    return _redis_client
