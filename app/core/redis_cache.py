import logging
import time
import uuid
from typing import Optional, Dict
import redis
from redis.exceptions import RedisError
from app.core.config import settings

logger = logging.getLogger(__name__)

# Compare-and-delete so a lock is only released by the holder that set it
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisCache:
    """Redis client wrapper used for cross-process locks"""

    def __init__(self):
        """Initialize Redis cache (lazy connection)"""
        self._client: Optional[redis.Redis] = None
        self._connected = False
        self._lock_tokens: Dict[str, str] = {}

    def _connect(self):
        """Connect to Redis server, degrading gracefully when unavailable"""
        try:
            client_kwargs = {
                'decode_responses': True,
                'socket_connect_timeout': 2,
                'socket_timeout': 2,
                'retry_on_timeout': False,
            }
            if settings.redis_password:
                client_kwargs['password'] = settings.redis_password

            self._client = redis.from_url(settings.redis_url, **client_kwargs)
            self._client.ping()
            self._connected = True
            logger.info("RedisCache: Connected to Redis")
        except RedisError as e:
            logger.warning(f"RedisCache: Connection failed - {e}")
            self._client = None
            self._connected = False

    def _ensure_connected(self) -> bool:
        if not self._connected or self._client is None:
            self._connect()
        return self._client is not None

    def ping(self) -> bool:
        """Check if Redis connection is alive"""
        try:
            if not self._ensure_connected():
                return False
            return bool(self._client.ping())
        except RedisError:
            self._connected = False
            return False

    def acquire_lock(self, lock_key: str, timeout_seconds: int = 10, block_seconds: int = 5) -> bool:
        """
        Acquire a distributed lock using Redis.

        Args:
            lock_key: Unique key for the lock
            timeout_seconds: How long the lock will be held (auto-release)
            block_seconds: How long to wait trying to acquire the lock

        Returns:
            True if lock acquired, False otherwise
        """
        try:
            if not self._ensure_connected():
                logger.warning(f"RedisCache: Cannot acquire lock {lock_key} - Redis not available")
                return False

            lock_value = str(uuid.uuid4())
            deadline = time.monotonic() + block_seconds

            while True:
                # SET key value NX EX timeout - atomic operation
                if self._client.set(lock_key, lock_value, nx=True, ex=timeout_seconds):
                    self._lock_tokens[lock_key] = lock_value
                    logger.debug(f"RedisCache: Lock acquired - {lock_key}")
                    return True
                if time.monotonic() >= deadline:
                    break
                time.sleep(0.05)

            logger.debug(f"RedisCache: Failed to acquire lock - {lock_key}")
            return False
        except RedisError as e:
            logger.error(f"RedisCache: Error acquiring lock {lock_key}: {e}")
            self._connected = False
            return False

    def release_lock(self, lock_key: str):
        """Release a distributed lock previously acquired by this instance"""
        lock_value = self._lock_tokens.pop(lock_key, None)
        if lock_value is None:
            return

        try:
            if not self._ensure_connected():
                logger.warning(f"RedisCache: Cannot release lock {lock_key} - Redis not available")
                return
            self._client.eval(_RELEASE_SCRIPT, 1, lock_key, lock_value)
            logger.debug(f"RedisCache: Lock released - {lock_key}")
        except RedisError as e:
            logger.error(f"RedisCache: Error releasing lock {lock_key}: {e}")
            self._connected = False


# Global cache instance
_cache_instance: Optional[RedisCache] = None


def get_cache() -> RedisCache:
    """Get global Redis cache instance"""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = RedisCache()
    return _cache_instance
