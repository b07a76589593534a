"""Redis client for the durable record store"""
import logging

import redis

from reconciler.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

SUBSCRIPTION_KEY_PREFIX = "subscription:"


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.PERSISTENCE_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.PERSISTENCE_TIMEOUT_SECONDS,
        )
    return _client


def subscription_key(user_id: str) -> str:
    return f"{SUBSCRIPTION_KEY_PREFIX}{user_id}"
