"""
Cache clients.

Thin key/value interfaces with TTL support. They hold bytes and nothing else;
any failure to reach the backend surfaces as CacheUnavailableError.

Redis is ONLY a cache, never the source of truth.
"""
import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis

from ..errors import CacheUnavailableError


class CacheClient(Protocol):
    """Best-effort, non-transactional key/value cache."""

    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def ping(self) -> bool: ...


class InMemoryCacheClient:
    """
    Process-local cache with TTL eviction on read.

    Used when no Redis URL is configured.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: bytes, ttl: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisCacheClient:
    """
    Redis-backed cache client.

    Socket timeouts bound every call; timeouts and connection errors become
    CacheUnavailableError so readers can fall back to the store.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: float = 0.5,
        client: Optional[redis.Redis] = None,
    ):
        """
        Args:
            url: redis:// or rediss:// URL (ignored when client is given)
            timeout: Socket connect/read timeout in seconds
            client: Pre-built client, mainly for tests
        """
        if client is None:
            if not url:
                raise ValueError("RedisCacheClient needs a url or a client")
            client = redis.from_url(
                url,
                socket_connect_timeout=timeout,
                socket_timeout=timeout,
            )
        self.client = client

    def get(self, key: str) -> Optional[bytes]:
        try:
            value = self.client.get(key)
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache read failed for {key}", {"error": str(e)}) from e
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    def set(self, key: str, value: bytes, ttl: int) -> None:
        try:
            self.client.set(key, value, ex=max(1, int(math.ceil(ttl))))
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache write failed for {key}", {"error": str(e)}) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache delete failed for {key}", {"error": str(e)}) from e

    def ping(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False
