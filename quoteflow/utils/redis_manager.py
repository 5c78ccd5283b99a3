"""
Redis Manager for QuoteFlow
Remembers, per tenant and gateway configuration scope, which delivery
strategy the WhatsApp gateway accepted last. Redis is optional: without it
every lookup misses and every write is dropped.
"""
import redis
import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STRATEGY_KEY_PREFIX = 'evolution:strategy'

class RedisManager:
    """Optional Redis connection holding the winning-strategy cache."""

    def __init__(self, app=None):
        self.redis_client = None
        self.strategy_ttl = 7 * 24 * 3600

        if app:
            self.init_app(app)

    def init_app(self, app):
        """Initialize Redis with Flask app."""
        self.strategy_ttl = app.config.get('DELIVERY_STRATEGY_CACHE_TTL', self.strategy_ttl)
        redis_url = app.config.get('REDIS_URL')
        if not redis_url:
            logger.info("REDIS_URL not set, delivery strategy cache disabled")
            self.redis_client = None
            return

        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            # Test connection
            self.redis_client.ping()
            logger.info("Redis connection established, delivery strategy cache enabled")

        except redis.RedisError as e:
            logger.warning(f"Redis unavailable, delivery strategy cache disabled: {e}")
            self.redis_client = None

    @staticmethod
    def strategy_key(client_id: Optional[int], scope: str) -> str:
        return f"{STRATEGY_KEY_PREFIX}:{client_id or 'global'}:{scope}"

    def get_cached_json(self, key: str) -> Optional[Any]:
        """Decoded JSON value, or None on a miss or when Redis is down."""
        if not self.redis_client:
            return None
        try:
            raw = self.redis_client.get(key)
        except redis.RedisError as e:
            logger.error(f"Error reading {key}: {e}")
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable cache entry {key}")
            self.forget(key)
            return None

    def cache_json(self, key: str, data: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        """Store a JSON value; the delivery strategy TTL applies by default."""
        if not self.redis_client:
            return False
        try:
            return bool(self.redis_client.set(key, json.dumps(data), ex=ttl or self.strategy_ttl))
        except (TypeError, ValueError, redis.RedisError) as e:
            logger.error(f"Error caching {key}: {e}")
            return False

    def forget(self, key: str) -> bool:
        """Drop a cached entry, e.g. after the gateway contract changed."""
        if not self.redis_client:
            return False
        try:
            return bool(self.redis_client.delete(key))
        except redis.RedisError as e:
            logger.error(f"Error deleting {key}: {e}")
            return False

# Global instance
redis_manager = RedisManager()

def init_redis(app):
    """Initialize Redis with Flask app."""
    redis_manager.init_app(app)
    return redis_manager
