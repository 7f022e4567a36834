"""
Redis Client for the copy-trading automation engine
Handles account statistics caching and scheduler job metrics
"""

import redis
import json
import logging
import os
from typing import Optional, Dict

from timezone_manager import tz

logger = logging.getLogger(__name__)


class RedisClient:
    def __init__(self, url=None, client=None):
        """Initialize Redis connection (or wrap an existing client)"""
        self.url = url or os.getenv('REDIS_URL')
        self.client = client
        if self.client is None:
            if not self.url:
                raise ValueError("REDIS_URL environment variable is required")
            self.connect()

    def connect(self):
        """Connect to Redis"""
        try:
            self.client = redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True
            )
            self.client.ping()
            logger.info(f"Connected to Redis at {self.url}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    # ========================================================================
    # ACCOUNT STATISTICS CACHING
    # ========================================================================

    def cache_account_stats(self, account_id, stats_data, ttl=300):
        """
        Cache account statistics (balance, equity, margin level, ...)
        TTL default: 5 minutes
        """
        cache_key = f"copytrading:stats:{account_id}"
        self.client.setex(
            cache_key,
            ttl,
            json.dumps(stats_data)
        )

    def get_account_stats(self, account_id) -> Optional[Dict]:
        """Get cached account statistics"""
        cache_key = f"copytrading:stats:{account_id}"
        stats_json = self.client.get(cache_key)

        if stats_json:
            return json.loads(stats_json)
        return None

    # ========================================================================
    # JOB METRICS
    # ========================================================================

    def store_job_metrics(self, job_id, metrics, ttl=86400):
        """Store the result of the last run of a scheduled job"""
        key = f"copytrading:jobs:{job_id}"
        payload = dict(metrics)
        payload['updated_at'] = tz.now_naive_utc().isoformat()
        self.client.setex(key, ttl, json.dumps(payload))


# Global Redis instance
_redis_client = None


def get_redis():
    """Get global Redis client instance"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client


def get_redis_optional() -> Optional[RedisClient]:
    """Global Redis client, or None when Redis is not configured/reachable"""
    try:
        return get_redis()
    except Exception as e:
        logger.warning(f"⚠️ Redis unavailable, running without cache: {e}")
        return None
