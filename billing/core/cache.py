import logging
from typing import Optional, Dict

from billing.core.config import settings
from billing.core.redis_cache import RedisCache

logger = logging.getLogger(__name__)


# Global cache instance
_cache_instance: Optional[RedisCache] = None


def get_cache() -> RedisCache:
    """Get global Redis cache instance"""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = RedisCache()
    return _cache_instance


def _plan_cache_key(plan_id: str) -> str:
    return f"catalogue_plan:{plan_id}"


def get_cached_plan(plan_id: str) -> Optional[Dict]:
    """Get cached catalogue plan."""
    return get_cache().get(_plan_cache_key(plan_id))


def set_cached_plan(plan_id: str, plan: Dict, ttl_minutes: int = None):
    """Cache catalogue plan."""
    ttl = ttl_minutes if ttl_minutes is not None else settings.plan_cache_ttl_minutes
    get_cache().set(_plan_cache_key(plan_id), plan, ttl)


def delete_cached_plan(plan_id: str):
    """Delete cached catalogue plan."""
    get_cache().delete(_plan_cache_key(plan_id))
