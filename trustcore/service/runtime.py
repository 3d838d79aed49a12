from __future__ import annotations

import asyncio
import os
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from trustcore.config import get_settings, reset_settings_cache
from trustcore.logging import get_logger
from trustcore.service.audit import AuditRecorder
from trustcore.service.auth import AuthenticationCoordinator
from trustcore.service.email import EmailService
from trustcore.service.federation import FederationBridge, build_federation_provider
from trustcore.service.hashing import CredentialHasher
from trustcore.service.integrity import LogIntegrityEngine, load_signing_key
from trustcore.service.retention import RetentionScheduler, build_archive_cipher
from trustcore.service.tokens import TokenIssuer
from trustcore.storage.memory import MemoryStore
from trustcore.storage.models import RetentionPolicy
from trustcore.storage.postgres import PostgresStore
from trustcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
    """Holds the singleton store and service instances for one process."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
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

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for federation state and the retention lease; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; federation state and "
                    "retention locking are process-local only."
                ),
                mode=fallback_mode,
            )

        timeout = self.settings.store_timeout_seconds
        self.hasher = CredentialHasher()
        self.issuer = TokenIssuer(self.settings)
        self.recorder = AuditRecorder(self.store, store_timeout=timeout)

        provider = build_federation_provider(self.settings)
        self.federation: Optional[FederationBridge] = None
        if provider is not None:
            self.federation = FederationBridge(
                provider,
                timeout=self.settings.federation_timeout_seconds,
                cache=self.cache,
                state_ttl=timedelta(minutes=self.settings.oauth_state_ttl_minutes),
            )

        self.auth = AuthenticationCoordinator(
            self.settings,
            self.store,
            self.store,
            hasher=self.hasher,
            issuer=self.issuer,
            audit=self.recorder,
            federation=self.federation,
        )

        signing_key = load_signing_key(
            self.settings.audit_signing_key_path, self.settings.shared_fs_root
        )
        self.integrity = LogIntegrityEngine(self.store, signing_key, store_timeout=timeout)

        self.email = EmailService.from_settings(self.settings)
        default_policy = RetentionPolicy(
            active_retention_days=self.settings.retention_active_days,
            archive_retention_days=self.settings.retention_archive_days,
            task_interval_hours=self.settings.retention_interval_hours,
            max_store_size_bytes=self.settings.retention_max_store_bytes,
            notify_address=self.settings.retention_notify_address,
        )
        self.retention = RetentionScheduler(
            self.store,
            self.integrity,
            archive_dir=os.path.join(self.settings.shared_fs_root, "audit_archive"),
            default_policy=default_policy,
            cipher=build_archive_cipher(
                self.settings.archive_encryption_key or self.settings.jwt_secret
            ),
            cache=self.cache,
            email=self.email,
            recorder=self.recorder,
            store_timeout=timeout,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            federation_provider=provider.name if provider is not None else None,
            signing_key_id=self.integrity.key_id,
            email_configured=self.email.is_configured,
            retention_enabled=self.settings.retention_enabled,
        )

    async def start(self) -> None:
        if self.settings.retention_enabled:
            await self.retention.start()

    async def aclose(self) -> None:
        """Stop background work and release connections."""
        await self.retention.stop()
        await self.recorder.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())
        runtime = Runtime()
        return runtime
