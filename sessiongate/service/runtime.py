from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessiongate.config import Settings, get_settings, reset_settings_cache
from sessiongate.logging import get_logger
from sessiongate.service.auth import AuthService
from sessiongate.service.background import BackgroundTasks
from sessiongate.service.identity import IdentityStore
from sessiongate.service.issuer import TokenIssuer
from sessiongate.service.rate_limit import LoginRateLimiter
from sessiongate.service.revocation import RevocationManager
from sessiongate.service.security_log import SecurityEventLogger
from sessiongate.service.sweep import CleanupSweep
from sessiongate.service.tokens import TokenCodec
from sessiongate.service.verifier import Verifier
from sessiongate.storage.common import KeyValueStore
from sessiongate.storage.identity_postgres import PostgresIdentityStore
from sessiongate.storage.memory import MemoryIdentityStore, MemoryKVStore
from sessiongate.storage.redis_store import RedisKVStore
from sessiongate.storage.sessions import SessionRepository

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (
                    parsed.scheme,
                    netloc,
                    parsed.path,
                    parsed.params,
                    parsed.query,
                    parsed.fragment,
                )
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        identities: Optional[IdentityStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.identities = (
            identities if identities is not None else self._build_identities()
        )

        self.background = BackgroundTasks()
        self.codec = TokenCodec(self.settings)
        self.sessions = SessionRepository(self.store)
        self.revocations = RevocationManager(self.store, self.sessions, self.settings)
        self.issuer = TokenIssuer(
            self.settings, self.codec, self.sessions, self.revocations, self.identities
        )
        self.verifier = Verifier(
            self.codec,
            self.sessions,
            self.revocations,
            self.identities,
            background=self.background,
        )
        self.security_log = SecurityEventLogger(
            self.store,
            ttl_days=self.settings.security_log_ttl_days,
            user_index_max=self.settings.security_log_user_max,
            background=self.background,
        )
        self.rate_limiter = LoginRateLimiter(
            self.store,
            max_attempts=self.settings.login_max_attempts,
            window_seconds=self.settings.login_lockout_minutes * 60,
        )
        self.sweep = CleanupSweep(
            self.sessions, batch_size=self.settings.sweep_batch_size
        )
        self.auth = AuthService(
            self.settings,
            codec=self.codec,
            sessions=self.sessions,
            identities=self.identities,
            issuer=self.issuer,
            verifier=self.verifier,
            revocations=self.revocations,
            security_log=self.security_log,
            rate_limiter=self.rate_limiter,
        )
        logger.info("runtime_init_complete", store_type=type(self.store).__name__)

    def _build_store(self) -> KeyValueStore:
        if self.settings.use_memory_store:
            return MemoryKVStore()
        try:
            store = RedisKVStore(
                self.settings.redis_url,
                operation_timeout=self.settings.store_timeout_seconds,
            )
            store.verify_connection()
            return store
        except Exception as exc:
            if not self.settings.test_mode:
                logger.error(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for sessions, revocation markers and blacklists; "
                    "start Redis or set USE_MEMORY_STORE=true for local development."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                message="Running without Redis under TEST_MODE; sessions are in-memory only.",
            )
            return MemoryKVStore()

    def _build_identities(self) -> IdentityStore:
        if self.settings.use_memory_store:
            return MemoryIdentityStore()
        try:
            return PostgresIdentityStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "identity_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    async def close(self) -> None:
        await self.background.drain()
        await self.store.close()
        close_identities = getattr(self.identities, "close", None)
        if callable(close_identities):
            close_identities()


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


def set_runtime(instance: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
