"""
Redis client utilities for the shared price cache and rate limiting
"""
import json
import logging
import redis
from typing import Optional, Dict, Any
from datetime import datetime

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper. Every method fails open: Redis is an optimisation, never a dependency of correctness."""

    def __init__(self, url: str):
        self.client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=0.5, socket_connect_timeout=0.5)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return self.client.ping()
        except redis.RedisError:
            return False

    # Price cache shared between service processes
    def cache_price(self, currency: str, rate: float, fetched_at: float, ttl_seconds: int) -> bool:
        """Store the last good rate for a currency"""
        try:
            key = f"price:{currency}"
            value = json.dumps({"rate": rate, "fetched_at": fetched_at})
            return bool(self.client.setex(key, ttl_seconds, value))
        except redis.RedisError as e:
            logger.warning(f"Failed to cache price for {currency}: {e}")
            return False

    def get_cached_price(self, currency: str) -> Optional[Dict[str, float]]:
        """Retrieve the last good rate for a currency"""
        try:
            value = self.client.get(f"price:{currency}")
            if value:
                return json.loads(value)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Failed to read cached price for {currency}: {e}")
            return None

    # Rate Limiting
    def check_rate_limit(self, subject: str, endpoint: str, max_requests: int, window_seconds: int) -> Dict[str, Any]:
        """Fixed-window counter for subject/endpoint combination"""
        try:
            current_time = int(datetime.now().timestamp())
            window_start = current_time // window_seconds * window_seconds
            current_key = f"rate_limit:{subject}:{endpoint}:{window_start}"

            pipe = self.client.pipeline()
            pipe.incr(current_key)
            pipe.expire(current_key, window_seconds)
            new_count = pipe.execute()[0]

            reset_time = window_start + window_seconds
            return {
                "allowed": new_count <= max_requests,
                "count": new_count,
                "remaining": max(0, max_requests - new_count),
                "reset_time": reset_time,
                "retry_after": reset_time - current_time if new_count > max_requests else 0
            }

        except redis.RedisError as e:
            logger.warning(f"Rate limit check failed, allowing request: {e}")
            return {
                "allowed": True,
                "count": 0,
                "remaining": max_requests,
                "reset_time": 0,
                "retry_after": 0
            }

def build_redis_client(url: str) -> Optional[RedisClient]:
    if not url:
        return None
    return RedisClient(url)
