from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenwarden.config import Settings, get_settings, reset_settings_cache
from tokenwarden.logging import get_logger
from tokenwarden.service.credentials import CredentialService
from tokenwarden.service.notifications import NotificationService
from tokenwarden.service.passwords import CredentialHasher
from tokenwarden.service.rate_limit import RateLimiter
from tokenwarden.service.secret_generator import SecretGenerator
from tokenwarden.service.sessions import SessionLifecycleManager
from tokenwarden.service.tokens import TokenCodec
from tokenwarden.service.workers import CryptoWorkerPool
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.postgres import PostgresStore
from tokenwarden.storage.redis_cache import RedisRateLimitStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store handle and service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.settings.require_key_material()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.state_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
            )
            raise

        self.rate_limit_store = self._connect_redis()

        self.secrets = SecretGenerator()
        self.hash_pool = CryptoWorkerPool("scrypt", self.settings.password_hash_workers)
        self.signing_pool = CryptoWorkerPool("signing", self.settings.signing_workers)
        self.codec = TokenCodec(
            leeway_seconds=self.settings.token_leeway_seconds, secrets=self.secrets
        )
        self.hasher = CredentialHasher(secrets=self.secrets, pool=self.hash_pool)
        self.rate_limiter = RateLimiter(store=self.rate_limit_store)
        self.notifier = NotificationService(
            api_url=self.settings.notification_api_url,
            api_key=self.settings.notification_api_key,
            from_address=self.settings.notification_from,
            timeout_seconds=self.settings.notification_timeout_seconds,
            app_name=self.settings.app_name,
        )
        self.sessions = SessionLifecycleManager(
            self.settings,
            codec=self.codec,
            hasher=self.hasher,
            secrets=self.secrets,
            rate_limiter=self.rate_limiter,
            signing_pool=self.signing_pool,
        )
        self.credentials = CredentialService(
            self.settings,
            hasher=self.hasher,
            notifier=self.notifier,
            rate_limiter=self.rate_limiter,
        )
        logger.info("runtime_init_completed", redis_enabled=self.rate_limit_store is not None)

    def _connect_redis(self) -> Optional[RedisRateLimitStore]:
        if not self.settings.redis_url:
            return None
        try:
            cache = RedisRateLimitStore(self.settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to keep rate limits in the store."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
            )
            return None

    async def aclose(self) -> None:
        await self.notifier.aclose()
        self.shutdown()

    def shutdown(self) -> None:
        self.hash_pool.shutdown(wait=False)
        self.signing_pool.shutdown(wait=False)
        if self.rate_limit_store is not None:
            self.rate_limit_store.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
            runtime.shutdown()
        reset_settings_cache()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
