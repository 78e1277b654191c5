from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from fleetauth.config import get_settings, reset_settings_cache
from fleetauth.logging import get_logger
from fleetauth.service.auth_requests import AuthRequestProcessor
from fleetauth.service.devices import DeviceRegistry
from fleetauth.service.signature import SignatureVerifier
from fleetauth.service.tenancy import TenantResolver
from fleetauth.service.tokens import TokenAuthority
from fleetauth.storage.memory import MemoryStore
from fleetauth.storage.postgres import PostgresStore
from fleetauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    userinfo = f"{parsed.username}:***" if parsed.username else ":***"
    return urlunparse(parsed._replace(netloc=f"{userinfo}@{netloc}"))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
            multi_tenant=self.settings.multi_tenant,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    self.settings.memory_state_path,
                    lock_timeout=self.settings.storage_timeout_seconds,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.storage_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode keeps the cache off the test event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the revoked-token denylist; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run without it."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.verifier = SignatureVerifier()
        self.tenants = TenantResolver(self.settings)
        self.registry = DeviceRegistry(self.store)
        self.tokens = TokenAuthority(self.store, self.registry, self.settings, cache=self.cache)
        self.auth_requests = AuthRequestProcessor(
            self.registry, self.tokens, self.tenants, self.verifier
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            token_ttl_minutes=self.settings.token_ttl_minutes,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two concurrent creations.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            previous = runtime
            if isinstance(previous.cache, SyncRedisCache):
                previous.cache.client.close()
            elif previous.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(previous.cache.close())
                except RuntimeError:
                    asyncio.run(previous.cache.close())
            previous.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
