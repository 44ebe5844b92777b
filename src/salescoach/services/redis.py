import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List

from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import StorageError
from ..settings import get_settings

logger = logging.getLogger(__name__)

_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError)


class RedisCrudService:
    """Async CRUD operations and per-key locks against a Redis instance.

    Failures are logged and re-raised as ``StorageError``; callers never get a
    silent miss for a value that may exist.
    """

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except _REDIS_ERRORS as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    def _require_client(self) -> Redis:
        if self._client is None:
            raise StorageError("Redis is not connected")
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing."""
        client = self._require_client()
        try:
            value = await client.get(key)
            return value if value is None else str(value)
        except _REDIS_ERRORS as e:
            logger.warning("Redis get %s failed: %s", key, e)
            raise StorageError(f"get {key} failed: {e}") from e

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> None:
        """Set key to value. If ttl_seconds is set, the key will expire."""
        client = self._require_client()
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await client.setex(key, ttl_seconds, value)
            else:
                await client.set(key, value)
        except _REDIS_ERRORS as e:
            logger.warning("Redis set %s failed: %s", key, e)
            raise StorageError(f"set {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        """Delete key. Missing keys are not an error."""
        client = self._require_client()
        try:
            await client.delete(key)
        except _REDIS_ERRORS as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            raise StorageError(f"delete {key} failed: {e}") from e

    async def keys_with_prefix(self, prefix: str) -> List[str]:
        """Return all keys starting with prefix (SCAN, not KEYS)."""
        client = self._require_client()
        try:
            return [str(k) async for k in client.scan_iter(match=f"{prefix}*")]
        except _REDIS_ERRORS as e:
            logger.warning("Redis scan %s* failed: %s", prefix, e)
            raise StorageError(f"scan {prefix}* failed: {e}") from e

    async def owns(self, lock: Lock) -> bool:
        """Return True while ``lock`` is still held by this client (it has not expired)."""
        try:
            return bool(await lock.owned())
        except _REDIS_ERRORS as e:
            logger.warning("Redis lock check %s failed: %s", lock.name, e)
            raise StorageError(f"lock check {lock.name} failed: {e}") from e

    @asynccontextmanager
    async def lock(
        self,
        name: str,
        timeout: float,
        blocking_timeout: float,
    ) -> AsyncIterator[Lock]:
        """Hold a Redis lock on name for the duration of the block and yield it.

        The lock expires after ``timeout`` seconds even if the holder dies;
        acquiring gives up after ``blocking_timeout`` seconds. Callers that
        write under the lock should check ``await lock.owned()`` first.
        """
        client = self._require_client()
        lock: Lock = client.lock(name, timeout=timeout, blocking_timeout=blocking_timeout)
        try:
            acquired = await lock.acquire()
        except _REDIS_ERRORS as e:
            logger.warning("Redis lock %s failed: %s", name, e)
            raise StorageError(f"lock {name} failed: {e}") from e
        if not acquired:
            raise StorageError(f"timed out waiting for lock {name}")
        try:
            yield lock
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Expired while held; another writer may already own it.
                logger.warning("Redis lock %s was lost before release: %s", name, e)


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())


# Lazy singleton shared by the session store and the workflow runner
_redis_instance: RedisCrudService | None = None


async def get_redis_crud_service_async() -> RedisCrudService:
    """Return a connected Redis CRUD service. Cached; raises StorageError when unavailable."""
    global _redis_instance
    if _redis_instance is not None:
        return _redis_instance
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        raise StorageError("REDIS_URL is not configured")
    try:
        await redis_crud.connect()
    except (*_REDIS_ERRORS, ConnectionError, TimeoutError) as e:
        raise StorageError(f"Redis unavailable: {e}") from e
    _redis_instance = redis_crud
    return _redis_instance


async def close_redis_crud_service() -> None:
    """Close the shared Redis connection. Idempotent."""
    global _redis_instance
    if _redis_instance is not None:
        await _redis_instance.close()
        _redis_instance = None
