from __future__ import annotations

import asyncio
import re
from typing import Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from marketauth.storage.errors import StoreUnavailable

T = TypeVar("T")

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def glob_escape(value: str) -> str:
    """Escape Redis glob metacharacters so a key prefix matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


def _unavailable(exc: Exception, op: str) -> StoreUnavailable:
    timed_out = isinstance(exc, (asyncio.TimeoutError, RedisTimeoutError))
    return StoreUnavailable(
        "revocation",
        f"revocation store {op} failed: {type(exc).__name__}",
        timed_out=timed_out,
    )


class RedisRevocationStore:
    """Revocation records in Redis: TTL'd keys plus prefix scan."""

    DEFAULT_OPERATION_TIMEOUT = 2.0
    SCAN_BATCH = 100

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def _bounded(self, awaitable: Awaitable[T], op: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            raise _unavailable(exc, op) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._bounded(
            self.client.set(key, value, ex=max(1, int(ttl_seconds))), "put"
        )

    async def get(self, key: str) -> Optional[str]:
        return await self._bounded(self.client.get(key), "get")

    async def delete(self, key: str) -> int:
        return int(await self._bounded(self.client.delete(key), "delete"))

    async def scan_delete(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; return how many existed."""

        async def _scan_and_delete() -> int:
            removed = 0
            batch: list[str] = []
            async for key in self.client.scan_iter(
                match=f"{glob_escape(prefix)}*", count=self.SCAN_BATCH
            ):
                batch.append(key)
                if len(batch) >= self.SCAN_BATCH:
                    removed += int(await self.client.delete(*batch))
                    batch = []
            if batch:
                removed += int(await self.client.delete(*batch))
            return removed

        return await self._bounded(_scan_and_delete(), "scan_delete")

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisRevocationStore:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisRevocationStore. Operations are bounded by the socket
    timeout of the underlying client.
    """

    SCAN_BATCH = RedisRevocationStore.SCAN_BATCH

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))
        except (RedisError, OSError) as exc:
            raise _unavailable(exc, "put") from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            return self._sync_client.get(key)
        except (RedisError, OSError) as exc:
            raise _unavailable(exc, "get") from exc

    async def delete(self, key: str) -> int:
        try:
            return int(self._sync_client.delete(key))
        except (RedisError, OSError) as exc:
            raise _unavailable(exc, "delete") from exc

    async def scan_delete(self, prefix: str) -> int:
        try:
            keys = list(
                self._sync_client.scan_iter(
                    match=f"{glob_escape(prefix)}*", count=self.SCAN_BATCH
                )
            )
            removed = 0
            for start in range(0, len(keys), self.SCAN_BATCH):
                removed += int(
                    self._sync_client.delete(*keys[start : start + self.SCAN_BATCH])
                )
            return removed
        except (RedisError, OSError) as exc:
            raise _unavailable(exc, "scan_delete") from exc

    async def close(self) -> None:
        self._sync_client.close()
