from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from idwarden.config import get_settings, reset_settings_cache
from idwarden.logging import get_logger
from idwarden.service.access import AccessEvaluator, build_access_policy
from idwarden.service.audit import AuditSink
from idwarden.service.auth import AuthOrchestrator
from idwarden.service.challenges import ChallengeService
from idwarden.service.hashing import SecretHasher
from idwarden.service.notify import LogDispatcher, WebhookDispatcher
from idwarden.service.rate_limit import RateLimiter
from idwarden.service.roles import RoleRegistry
from idwarden.service.session_tokens import SessionTokenCodec
from idwarden.service.tokens import TokenLedger
from idwarden.storage.memory import MemoryStore
from idwarden.storage.postgres import PostgresStore
from idwarden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
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
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the singleton service graph for the FastAPI app and scripts."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                # tests get a fresh, unpersisted store per runtime
                MemoryStore(fs_root=None if settings.test_mode else settings.shared_fs_root)
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
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
        if settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if settings.test_mode:
                    cache = SyncRedisCache(settings.redis_url)
                else:
                    cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for verification-code rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; send windows are "
                    "enforced per process only."
                ),
                mode=fallback_mode,
            )

        self.hasher = SecretHasher(settings)
        self.codec = SessionTokenCodec(settings)
        self.audit = AuditSink(self.store)
        self.limiter = RateLimiter(
            self.cache, window_seconds=settings.challenge_rate_window_seconds
        )
        self.dispatcher: Union[LogDispatcher, WebhookDispatcher]
        if settings.notify_webhook_url:
            self.dispatcher = WebhookDispatcher(
                settings.notify_webhook_url,
                token=settings.notify_webhook_token,
                timeout=settings.notify_webhook_timeout_seconds,
            )
        else:
            self.dispatcher = LogDispatcher(log_codes=settings.log_verification_codes)
        self.ledger = TokenLedger(
            self.store,
            self.hasher,
            self.audit,
            ttl=timedelta(days=settings.refresh_token_ttl_days),
        )
        self.challenges = ChallengeService(
            self.store,
            self.limiter,
            self.dispatcher,
            self.hasher,
            self.audit,
            ttl=timedelta(minutes=settings.challenge_ttl_minutes),
            max_attempts=settings.challenge_max_attempts,
            code_length=settings.challenge_code_length,
            rate_window_seconds=settings.challenge_rate_window_seconds,
            default_country_code=settings.default_phone_country_code,
        )
        self.roles = RoleRegistry(
            self.store,
            self.audit,
            system_roles=settings.system_role_names,
            default_role=settings.default_role_name,
        )
        self.roles.ensure_system_roles()
        self.policy = build_access_policy(settings)
        self.access = AccessEvaluator(self.policy, self.codec, self.audit)
        self.auth = AuthOrchestrator(
            self.store,
            self.hasher,
            self.codec,
            self.ledger,
            self.challenges,
            self.roles,
            self.audit,
            allow_signup=settings.allow_signup,
            default_country_code=settings.default_phone_country_code,
        )
        logger.info("runtime_init_completed", store_type=store_type, redis=bool(self.cache))

    async def close(self) -> None:
        """Release Redis, Postgres and notification gateway connections."""
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        if isinstance(self.dispatcher, WebhookDispatcher):
            await self.dispatcher.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.disconnect()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                # connection may already be closed
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
