"""
CarePath - Redis Caching Service
Caches the published stage rule set and care-pathway step lists
"""

import logging
import json
from typing import List, Dict, Optional, Any
import redis
from redis import Redis, RedisError

from carepath.config import settings

logger = logging.getLogger(__name__)

RULESET_KEY = "ruleset"
PATHWAY_KEY = "pathway_steps"


# =============================================================================
# Redis Cache Service
# =============================================================================

class RedisCacheService:
    """Read-through cache for slowly changing scheduling reference data"""

    def __init__(self):
        self.redis_client: Optional[Redis] = None
        self.default_ttl = settings.cache_ttl

        if settings.cache_enabled:
            self._connect()
        else:
            logger.info("Caching disabled by configuration")

    def _connect(self):
        """Establish Redis connection"""
        try:
            self.redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_connections,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.redis_client.ping()
            logger.info(f"✓ Redis cache connected: {settings.redis_url}")

        except RedisError as e:
            logger.error(f"Redis connection failed: {e}")
            logger.warning("Caching will be disabled")
            self.redis_client = None

    def _is_available(self) -> bool:
        if not self.redis_client:
            return False
        try:
            self.redis_client.ping()
            return True
        except RedisError:
            return False

    def _generate_key(self, prefix: str, *identifiers: Any) -> str:
        """Generate cache key from prefix and identifiers"""
        parts = [prefix] + [str(i) for i in identifiers]
        return ":".join(parts)

    def _get_json(self, key: str) -> Optional[Any]:
        if not self._is_available():
            return None
        try:
            cached = self.redis_client.get(key)
            if cached is None:
                logger.debug(f"Cache MISS: {key}")
                return None
            logger.debug(f"Cache HIT: {key}")
            return json.loads(cached)
        except (RedisError, ValueError) as e:
            logger.error(f"Error reading cache key {key}: {e}")
            return None

    def _set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self._is_available():
            return False
        try:
            self.redis_client.setex(key, ttl or self.default_ttl, json.dumps(value))
            return True
        except RedisError as e:
            logger.error(f"Failed to cache {key}: {e}")
            return False

    def _delete(self, *keys: str) -> int:
        if not self._is_available():
            return 0
        try:
            return self.redis_client.delete(*keys)
        except RedisError as e:
            logger.error(f"Failed to invalidate {keys}: {e}")
            return 0

    # =========================================================================
    # Published Rule Set
    # =========================================================================

    def cache_published_rule_set(self, version: int, rules: List[Dict]) -> bool:
        return self._set_json(
            self._generate_key(RULESET_KEY, "published"),
            {"version": version, "rules": rules},
        )

    def get_cached_published_rule_set(self) -> Optional[Dict]:
        """Returns {"version", "rules"} or None"""
        return self._get_json(self._generate_key(RULESET_KEY, "published"))

    def invalidate_rule_set(self) -> int:
        deleted = self._delete(self._generate_key(RULESET_KEY, "published"))
        if deleted:
            logger.info("✓ Invalidated cached stage rule set")
        return deleted

    # =========================================================================
    # Care Pathway Steps
    # =========================================================================

    def cache_pathway_steps(self, pathway_id: str, steps_json: Optional[list]) -> bool:
        return self._set_json(self._generate_key(PATHWAY_KEY, pathway_id), {"steps": steps_json})

    def get_cached_pathway_steps(self, pathway_id: str) -> Optional[Dict]:
        """Returns {"steps": raw steps_json} or None on miss"""
        return self._get_json(self._generate_key(PATHWAY_KEY, pathway_id))

    def invalidate_pathway(self, pathway_id: str) -> int:
        deleted = self._delete(self._generate_key(PATHWAY_KEY, pathway_id))
        if deleted:
            logger.info(f"✓ Invalidated cached steps for pathway {pathway_id}")
        return deleted


# =============================================================================
# Global Cache Instance
# =============================================================================

_cache_service: Optional[RedisCacheService] = None


def get_cache_service() -> RedisCacheService:
    """Get or create cache service instance"""
    global _cache_service
    if _cache_service is None:
        _cache_service = RedisCacheService()
    return _cache_service
