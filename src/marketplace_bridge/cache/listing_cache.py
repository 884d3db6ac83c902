"""
Redis cache for aggregated listings.

Aggregations are expensive (one call per SKU), so results are kept for a short
TTL under a tenant-scoped key. Redis faults are logged and treated as misses;
the cache never fails an aggregation.
"""

import json
from typing import Optional

import redis
from redis.connection import ConnectionPool

from marketplace_bridge.marketplaces.base import AggregationResult
from marketplace_bridge.utils.logger import get_logger

logger = get_logger(__name__)


LISTINGS_KEY = "listings"


class ListingCache:
    """
    Redis-backed cache of ``AggregationResult`` values.

    Supports:
    - Tenant-scoped keys (``tenant:{tenant_id}:listings``)
    - TTL management
    - JSON serialization
    """

    def __init__(self, redis_url: Optional[str] = None, default_ttl: int = 300,
                 max_connections: int = 20, client: Optional[redis.Redis] = None):
        """
        Initialize listing cache.

        Args:
            redis_url: Redis connection URL
            default_ttl: TTL in seconds (5 minutes)
            max_connections: Maximum pool connections
            client: Pre-built Redis client, used instead of ``redis_url``
        """
        self.default_ttl = default_ttl

        if client is not None:
            self.client = client
        else:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            pool = ConnectionPool.from_url(redis_url, max_connections=max_connections,
                                           decode_responses=True)
            self.client = redis.Redis(connection_pool=pool)
            logger.info(f"Listing cache initialized (ttl={default_ttl}s, pool={max_connections})")

    def _make_key(self, tenant_id: str, key: str = LISTINGS_KEY) -> str:
        """Scoped key format: tenant:{tenant_id}:{key}"""
        return f"tenant:{tenant_id}:{key}"

    def get_listings(self, tenant_id: str) -> Optional[AggregationResult]:
        """Return the cached result or None on miss or cache fault."""
        cache_key = self._make_key(tenant_id)

        try:
            value = self.client.get(cache_key)
        except redis.RedisError as e:
            logger.error(f"Cache get error for {cache_key}: {e}")
            return None

        if value is None:
            logger.debug(f"Cache miss: {cache_key}")
            return None

        try:
            result = AggregationResult.from_dict(json.loads(value), from_cache=True)
        except (ValueError, TypeError) as e:
            logger.error(f"Cache decode error for {cache_key}: {e}")
            return None

        logger.debug(f"Cache hit: {cache_key}")
        return result

    def set_listings(self, tenant_id: str, result: AggregationResult,
                     ttl: Optional[int] = None) -> bool:
        """Store ``result``; returns False if Redis rejected it."""
        cache_key = self._make_key(tenant_id)
        ttl = ttl or self.default_ttl

        try:
            self.client.setex(cache_key, ttl, json.dumps(result.to_dict()))
        except redis.RedisError as e:
            logger.error(f"Cache set error for {cache_key}: {e}")
            return False

        logger.debug(f"Cache set: {cache_key} (ttl={ttl}s)")
        return True

    def invalidate(self, tenant_id: str) -> bool:
        cache_key = self._make_key(tenant_id)

        try:
            deleted = self.client.delete(cache_key)
        except redis.RedisError as e:
            logger.error(f"Cache delete error for {cache_key}: {e}")
            return False

        logger.debug(f"Cache delete: {cache_key} (deleted={deleted})")
        return deleted > 0

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False
