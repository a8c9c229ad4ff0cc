from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from psycopg_pool import ConnectionPool

from marketauth.config import PrincipalKind, get_settings, reset_settings_cache
from marketauth.logging import get_logger
from marketauth.service.auth import AuthService
from marketauth.service.principals import PrincipalRegistry
from marketauth.storage.memory import MemoryCredentialStore, MemoryRevocationStore
from marketauth.storage.postgres import PostgresCredentialStore, create_pool
from marketauth.storage.redis_cache import RedisRevocationStore, SyncRedisRevocationStore

logger = get_logger(__name__)

RevocationBackend = Union[RedisRevocationStore, SyncRedisRevocationStore, MemoryRevocationStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store handles and the auth service for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.pool: ConnectionPool | None = None
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                state_dir = (
                    Path(self.settings.shared_fs_root) / "state"
                    if self.settings.persist_memory_store
                    else None
                )
                stores = [MemoryCredentialStore(kind, state_dir=state_dir) for kind in PrincipalKind]
            else:
                self.pool = create_pool(self.settings.database_url)
                stores = [PostgresCredentialStore(self.pool, kind) for kind in PrincipalKind]
            self.registry = PrincipalRegistry(stores)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if self.pool is not None:
                self.pool.close()
            raise

        self.revocation: RevocationBackend | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    backend: RevocationBackend = SyncRedisRevocationStore(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    backend = RedisRevocationStore(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                        operation_timeout=self.settings.revocation_op_timeout,
                    )
                backend.verify_connection()
                self.revocation = backend
            except Exception as exc:
                redis_error = exc
                self.revocation = None

        self.redis_enabled = self.revocation is not None
        if self.revocation is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh-token revocation; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; refresh-token records "
                    "live in this process only."
                ),
                mode=fallback_mode,
            )
            self.revocation = MemoryRevocationStore()

        self.auth = AuthService.from_settings(self.settings, self.registry, self.revocation)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.redis_enabled,
            revocation_mode=self.settings.refresh_revocation_mode.value,
            principal_kinds=[k.value for k in self.registry.kinds],
        )

    async def close(self) -> None:
        if self.revocation is not None:
            await self.revocation.close()
        if self.pool is not None:
            self.pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_quietly(current: Runtime) -> None:
    if isinstance(current.revocation, SyncRedisRevocationStore):
        current.revocation._sync_client.close()
    elif isinstance(current.revocation, RedisRevocationStore):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(current.revocation.close())
        else:
            loop.create_task(current.revocation.close())
    if current.pool is not None:
        current.pool.close()


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_quietly(runtime)
            except (OSError, RuntimeError) as exc:
                logger.debug("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
