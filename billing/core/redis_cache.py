import json
import logging
import time
import uuid
from typing import Optional, Dict, Any

import redis
from redis.exceptions import RedisError

from billing.core.config import settings

logger = logging.getLogger(__name__)

# Deletes the lock only when it still holds our token
_RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisCache:
    """Redis-backed cache for catalogue lookups and batch job locks"""

    def __init__(self):
        """Initialize Redis cache (lazy connection)"""
        self._client: Optional[redis.Redis] = None
        self._connected = False
        self._lock_tokens: Dict[str, str] = {}

    def _connect(self):
        """Connect to Redis server"""
        client_kwargs: Dict[str, Any] = {
            'decode_responses': False,
            'socket_connect_timeout': 2,
            'socket_timeout': 2,
            'retry_on_timeout': False,
            'health_check_interval': 0,
        }
        # settings.redis_password takes precedence over a password in the URL
        if settings.redis_password:
            client_kwargs['password'] = settings.redis_password

        try:
            self._client = redis.from_url(settings.redis_url, **client_kwargs)
            self._client.ping()
            self._connected = True
            logger.info(f"RedisCache: Connected to Redis at {settings.redis_url.split('@')[-1]}")
        except (RedisError, ValueError) as e:
            logger.warning(f"RedisCache: Connection failed - {e}")
            self._connected = False
            self._client = None

    def _ensure_connected(self):
        """Ensure Redis connection is established (lazy connection)"""
        if self._connected and self._client is not None:
            try:
                self._client.ping()
                return
            except RedisError:
                self._connected = False
                self._client = None
        self._connect()

    def get(self, key: str) -> Optional[Dict]:
        """Get cached value if not expired"""
        self._ensure_connected()
        if self._client is None:
            logger.warning(f"RedisCache: Cannot get key {key} - Redis not available")
            return None

        try:
            data = self._client.get(key)
            if data is None:
                logger.debug(f"Cache miss: {key}")
                return None

            try:
                decoded = json.loads(data.decode('utf-8'))
                logger.debug(f"Cache hit: {key}")
                return decoded
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"RedisCache: Failed to decode value for key {key}: {e}")
                # Delete corrupted entry
                self._client.delete(key)
                return None
        except RedisError as e:
            logger.error(f"RedisCache: Error getting key {key}: {e}")
            self._connected = False
            return None

    def set(self, key: str, value: Dict, ttl_minutes: int):
        """Set cache value with TTL in minutes"""
        self._ensure_connected()
        if self._client is None:
            logger.warning(f"RedisCache: Cannot set key {key} - Redis not available")
            return

        try:
            serialized = json.dumps(value, default=str).encode('utf-8')
            self._client.setex(key, ttl_minutes * 60, serialized)
            logger.debug(f"Cache set: {key}, TTL: {ttl_minutes} minutes")
        except RedisError as e:
            logger.error(f"RedisCache: Error setting key {key}: {e}")
            self._connected = False

    def delete(self, key: str):
        """Delete cache entry"""
        self._ensure_connected()
        if self._client is None:
            logger.warning(f"RedisCache: Cannot delete key {key} - Redis not available")
            return

        try:
            self._client.delete(key)
            logger.debug(f"Cache deleted: {key}")
        except RedisError as e:
            logger.error(f"RedisCache: Error deleting key {key}: {e}")
            self._connected = False

    def ping(self) -> bool:
        """Check if Redis connection is alive"""
        self._ensure_connected()
        return self._client is not None

    def acquire_lock(self, lock_key: str, timeout_seconds: int = 10, block_seconds: float = 0) -> bool:
        """
        Acquire a distributed lock using Redis.

        Args:
            lock_key: Unique key for the lock
            timeout_seconds: How long the lock will be held (auto-release)
            block_seconds: How long to wait trying to acquire the lock

        Returns:
            True if lock acquired, False otherwise
        """
        self._ensure_connected()
        if self._client is None:
            logger.warning(f"RedisCache: Cannot acquire lock {lock_key} - Redis not available")
            return False

        lock_value = str(uuid.uuid4())
        end_time = time.monotonic() + block_seconds
        try:
            while True:
                # SET NX EX is atomic: only one holder at a time
                if self._client.set(lock_key, lock_value, nx=True, ex=timeout_seconds):
                    self._lock_tokens[lock_key] = lock_value
                    logger.debug(f"RedisCache: Lock acquired - {lock_key}")
                    return True
                if time.monotonic() >= end_time:
                    break
                time.sleep(0.05)

            logger.debug(f"RedisCache: Failed to acquire lock - {lock_key}")
            return False
        except RedisError as e:
            logger.error(f"RedisCache: Error acquiring lock {lock_key}: {e}")
            self._connected = False
            return False

    def release_lock(self, lock_key: str):
        """Release a distributed lock held by this instance"""
        token = self._lock_tokens.pop(lock_key, None)
        if token is None:
            return

        self._ensure_connected()
        if self._client is None:
            logger.warning(f"RedisCache: Cannot release lock {lock_key} - Redis not available")
            return

        try:
            self._client.eval(_RELEASE_LOCK_SCRIPT, 1, lock_key, token)
            logger.debug(f"RedisCache: Lock released - {lock_key}")
        except RedisError as e:
            logger.error(f"RedisCache: Error releasing lock {lock_key}: {e}")
            self._connected = False
