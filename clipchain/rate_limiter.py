"""
Sliding-window limit on generation requests per user.

Backed by Redis sorted sets (`ratelimit:{user_id}`, members and scores are
request timestamps). When REDIS_URL is unset or Redis is unreachable the
in-process limiter below takes over with a tighter limit, since its state
is lost on restart.
"""

import os
import time
import logging
import threading
from typing import Dict, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

REDIS_URL = os.environ.get("REDIS_URL", "")
DEFAULT_MAX_REQUESTS = int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "20"))
DEFAULT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "3600"))
FALLBACK_MAX_REQUESTS = max(1, DEFAULT_MAX_REQUESTS // 2)


def check_rate_limit(
    redis_client,
    user_id: str,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> Tuple[bool, int, int]:
    """
    Check and record a request for the given user.

    Returns:
        (allowed, remaining, retry_after_seconds)
    """
    now = time.time()
    key = f"ratelimit:{user_id}"

    pipe = redis_client.pipeline(transaction=True)
    pipe.zremrangebyscore(key, 0, now - window_seconds)
    pipe.zcard(key)
    pipe.zrange(key, 0, 0, withscores=True)
    _, current_count, oldest_entries = pipe.execute()

    if current_count >= max_requests:
        if oldest_entries:
            retry_after = int(oldest_entries[0][1] + window_seconds - now) + 1
        else:
            retry_after = window_seconds
        logger.warning(f"Rate limit exceeded for user {user_id}: {current_count}/{max_requests}")
        return False, 0, retry_after

    pipe = redis_client.pipeline(transaction=True)
    pipe.zadd(key, {f"{now}": now})
    pipe.expire(key, window_seconds + 60)
    pipe.execute()

    return True, max_requests - current_count - 1, 0


class MemoryRateLimiter:
    """Same contract as check_rate_limit, kept in process memory."""

    def __init__(self, max_requests: int = FALLBACK_MAX_REQUESTS, window_seconds: int = DEFAULT_WINDOW_SECONDS):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._request_log: Dict[str, List[float]] = {}

    def check(self, user_id: str) -> Tuple[bool, int, int]:
        now = time.time()
        with self._lock:
            timestamps = [ts for ts in self._request_log.get(user_id, []) if ts > now - self.window_seconds]
            if len(timestamps) >= self.max_requests:
                self._request_log[user_id] = timestamps
                retry_after = int(timestamps[0] + self.window_seconds - now) + 1
                return False, 0, retry_after
            timestamps.append(now)
            self._request_log[user_id] = timestamps
            return True, self.max_requests - len(timestamps), 0

    def reset(self):
        with self._lock:
            self._request_log.clear()


class RequestThrottle:
    """Redis limiter with automatic fallback to MemoryRateLimiter."""

    def __init__(self, redis_client=None, fallback: Optional[MemoryRateLimiter] = None):
        self.redis_client = redis_client
        self.fallback = fallback or MemoryRateLimiter()

    @classmethod
    def from_env(cls) -> "RequestThrottle":
        client = None
        if REDIS_URL:
            client = redis.Redis.from_url(REDIS_URL, socket_connect_timeout=2, socket_timeout=2)
            logger.info("Request throttle using Redis")
        else:
            logger.info("REDIS_URL not set, request throttle using in-memory fallback")
        return cls(client)

    def check(self, user_id: str) -> Tuple[bool, int, int]:
        if self.redis_client is not None:
            try:
                return check_rate_limit(self.redis_client, user_id)
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable for rate limiting, using in-memory fallback: {e}")
        return self.fallback.check(user_id)
