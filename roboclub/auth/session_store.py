"""
Session store backends.

The session store is an optional key-value cache holding refresh-token
hashes, password-reset token hashes and the access-token blacklist. When it
is disabled or unreachable the auth core runs in stateless mode: tokens are
checked by signature and expiry only.

Backends:
- RedisSessionStore: production backend (redis.asyncio)
- InMemorySessionStore: single-process backend for development and tests
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from roboclub.config import Settings

logger = logging.getLogger("roboclub.session_store")


class SessionStore(ABC):
    """Key-value interface the token service relies on."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete a key."""
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """
    Process-local store with per-key expiry.

    Operations never await between read and write, so ``pop`` is atomic
    within one event loop.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, time.monotonic() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        value = self._live(key)
        self._data.pop(key, None)
        return value

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None if it is absent."""
        if self._live(key) is None:
            return None
        return self._data[key][1] - time.monotonic()


class RedisSessionStore(SessionStore):
    """Thin Redis wrapper for refresh hashes and the token blacklist."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


async def connect_session_store(settings: Settings) -> Optional[SessionStore]:
    """
    Build the configured session store.

    Returns:
        A connected store, or None when the store is disabled or Redis cannot
        be reached (stateless mode).
    """
    if not settings.session_store_enabled:
        logger.info("Session store disabled by configuration; using stateless token checks")
        return None
    if not settings.redis_url:
        logger.warning("SESSION_STORE_ENABLED is set but REDIS_URL is missing; using stateless token checks")
        return None

    store = RedisSessionStore(settings.redis_url)
    try:
        await store.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unavailable at {settings.redis_url} ({e}); using stateless token checks")
        await store.close()
        return None

    logger.info(f"Session store connected: {settings.redis_url}")
    return store
