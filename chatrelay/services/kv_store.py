"""Keyed state store used by the abuse gate.

Two backends share one contract:
- ``RedisKeyValueStore`` for multi-process deployments
- ``MemoryKeyValueStore`` for tests and single-process runs

Unlike a cache, this store must tell "absent" apart from "broken":
``get`` returns None only when the key does not exist, and every transport
failure is raised as ``StoreUnavailable`` so the gate can choose its
fail-open/fail-closed policy.
"""

import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from chatrelay.config import settings

logger = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    """The keyed state store could not be read or written."""

    def __init__(self, message: str, operation: str = "read"):
        super().__init__(message)
        # "read", "write" or "connect"
        self.operation = operation


class KeyValueStore:
    """Contract for the keyed state store (string values)."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
    ) -> bool:
        """
        Write ``value`` only if the key still holds ``expected``.

        Args:
            key: Key name
            expected: Raw value previously read (None if the key was absent)
            value: New raw value

        Returns:
            True if written, False if another writer got there first
        """
        raise NotImplementedError

    async def get_json(self, key: str) -> Optional[Any]:
        """Get JSON value by key. Undecodable values are logged and treated as absent."""
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.error(f"Failed to decode JSON for key {key}")
            return None

    async def set_json(self, key: str, value: Any) -> None:
        """Set JSON value."""
        await self.set(key, json.dumps(value))


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. Each call runs without awaiting, so CAS is atomic per event loop."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
    ) -> bool:
        if self._data.get(key) != expected:
            return False
        self._data[key] = value
        return True

    def keys(self):
        return list(self._data)


class RedisKeyValueStore(KeyValueStore):
    """Async Redis backend."""

    def __init__(self):
        self._client: Optional[Any] = None
        self._available = False

    async def connect(self):
        """Connect to Redis server."""
        try:
            self._client = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                password=settings.redis_password if settings.redis_password else None,
                decode_responses=False,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            # Test connection
            await self._client.ping()
            self._available = True
            logger.info(f"Connected to Redis at {settings.redis_host}:{settings.redis_port}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._client = None
            self._available = False
            raise StoreUnavailable(f"Redis connection failed: {e}", "connect") from e

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._available = False
            logger.info("Redis connection closed")

    @property
    def is_available(self) -> bool:
        """Check if Redis is available."""
        return self._available

    @staticmethod
    def _decode(value: Optional[bytes]) -> Optional[str]:
        # Undecodable bytes survive as surrogates and fail later as a malformed value
        if value is None:
            return None
        return value.decode("utf-8", "surrogateescape")

    @staticmethod
    def _encode(value: str) -> bytes:
        return value.encode("utf-8", "surrogateescape")

    def _require_client(self, operation: str):
        if not self._available:
            raise StoreUnavailable("Redis is not connected", operation)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        client = self._require_client("read")
        try:
            return self._decode(await client.get(key))
        except Exception as e:
            logger.error(f"Redis GET error: {e}")
            raise StoreUnavailable(f"GET {key} failed") from e

    async def set(self, key: str, value: str) -> None:
        client = self._require_client("write")
        try:
            await client.set(key, self._encode(value))
        except Exception as e:
            logger.error(f"Redis SET error: {e}")
            raise StoreUnavailable(f"SET {key} failed", "write") from e

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
    ) -> bool:
        client = self._require_client("write")
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current != expected:
                    return False
                pipe.multi()
                pipe.set(key, self._encode(value))
                await pipe.execute()
                return True
        except WatchError:
            return False
        except Exception as e:
            logger.error(f"Redis CAS error: {e}")
            raise StoreUnavailable(f"CAS {key} failed", "write") from e
