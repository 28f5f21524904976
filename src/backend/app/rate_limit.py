import logging
import time
from typing import Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

_rl_cache: Dict[str, int] = {}
_redis_clients: Dict[str, "redis.Redis"] = {}


def _get_redis(url: Optional[str]) -> Optional["redis.Redis"]:
    if not url:
        return None
    client = _redis_clients.get(url)
    if client is None:
        client = redis.Redis.from_url(url, decode_responses=True)
        _redis_clients[url] = client
    return client


def check_and_increment(key: str, max_per_minute: int = 120, redis_url: Optional[str] = None) -> Tuple[bool, int]:
    """Fixed one-minute bucket per key.

    Uses Redis when configured so limits hold across workers; falls back to an
    in-process bucket map when Redis is unset or unreachable.
    """
    now = int(time.time() // 60)
    bucket = f"rl:{key}:{now}"
    client = _get_redis(redis_url)
    if client is not None:
        try:
            val = int(client.incr(bucket))
            if val == 1:
                client.expire(bucket, 65)
            return val <= max_per_minute, val
        except redis.RedisError as exc:
            logger.warning("rate_limit_redis_unavailable", extra={"error": exc.__class__.__name__})
    count = _rl_cache.get(bucket, 0)
    if count >= max_per_minute:
        return False, count
    _rl_cache[bucket] = count + 1
    if len(_rl_cache) > 10000:
        stale = [k for k in _rl_cache if not k.endswith(f":{now}")]
        for k in stale:
            _rl_cache.pop(k, None)
    return True, count + 1


def reset() -> None:
    _rl_cache.clear()
