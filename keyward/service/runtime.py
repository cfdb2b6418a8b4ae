from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from keyward.config import Settings, get_settings, reset_settings_cache
from keyward.logging import get_logger
from keyward.service.admin import AdminService
from keyward.service.auth import AuthService
from keyward.service.delivery import DeliveryDispatcher
from keyward.service.email import EmailService
from keyward.service.sms import SMSService
from keyward.service.tokens import PasswordService, TokenSigner
from keyward.service.user import UserService
from keyward.service.verification import VerificationService
from keyward.storage.memory import MemoryStore
from keyward.storage.memory_cache import MemoryCache
from keyward.storage.models import ChannelType
from keyward.storage.postgres import PostgresStore
from keyward.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, MemoryCache]

SENDER_TIMEOUT_SHARE = 0.8


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
    """Holds the store, cache and service singletons."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_seconds=self.settings.store_timeout_seconds,
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
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Cache = self._build_cache()

        self.passwords = PasswordService(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.signer = TokenSigner(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        code_ttl_minutes = max(1, self.settings.verification_code_ttl_seconds // 60)
        # Senders give up inside the attempt budget
        sender_timeout = self.settings.delivery_timeout_seconds * SENDER_TIMEOUT_SHARE
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=code_ttl_minutes,
            timeout=sender_timeout,
        )
        self.sms = SMSService(
            gateway_url=self.settings.sms_gateway_url,
            gateway_token=self.settings.sms_gateway_token,
            sender=self.settings.sms_sender,
            code_ttl_minutes=code_ttl_minutes,
            timeout=sender_timeout,
        )
        self.dispatcher = DeliveryDispatcher(
            {ChannelType.EMAIL: self.email, ChannelType.PHONE: self.sms},
            max_attempts=self.settings.delivery_max_attempts,
            attempt_timeout=self.settings.delivery_timeout_seconds,
            workers=self.settings.delivery_workers,
            queue_size=self.settings.delivery_queue_size,
        )
        self.verification = VerificationService(
            self.store,
            self.store,
            self.cache,
            self.dispatcher,
            code_length=self.settings.verification_code_length,
            code_ttl_seconds=self.settings.verification_code_ttl_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.signer,
            self.passwords,
            self.verification,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.admin = AdminService(self.store)
        self.users = UserService(self.store, self.cache, self.passwords)
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_cache(self) -> Cache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode keeps pytest free of loop binding issues
                cache_cls = SyncRedisCache if self.settings.test_mode else RedisCache
                cache = cache_cls(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens and verification codes; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.dispatcher.stop()
        await self.cache.close()


runtime: Optional[Runtime] = None
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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            if isinstance(runtime.cache, RedisCache):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
                else:
                    loop.create_task(runtime.cache.close())
            elif isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
