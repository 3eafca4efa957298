import logging
from typing import Optional

import redis
from redis import Redis

logger = logging.getLogger(__name__)


def get_redis_client(url: Optional[str]) -> Optional["Redis[str]"]:
    """
    Redis is optional here: without it webhook events are simply not de-duplicated
    """
    if not url:
        return None
    try:
        # str in, str out (no bytes decoding at call sites)
        client = redis.from_url(url, decode_responses=True)
        if client.ping():
            return client
        raise redis.ConnectionError("Ping failed")
    except redis.RedisError as e:
        logger.warning(f"⚠️ Redis unavailable ({e}). No event de-duplication.")
        return None
