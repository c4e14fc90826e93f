from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlsplit

from piauth.config import Settings, get_settings, reset_settings_cache
from piauth.logging import get_logger
from piauth.service.circuit_breaker import CircuitBreaker
from piauth.service.compliance import RegionalComplianceGate
from piauth.service.coordinator import AuthCoordinator
from piauth.service.principals import (
    CredentialVerifier,
    MemoryPrincipalDirectory,
    PiNetworkVerifier,
    PrincipalDirectory,
)
from piauth.service.rate_limit import RateLimiter
from piauth.service.sweeper import RevocationSweeper
from piauth.service.tokens import TokenService
from piauth.storage.errors import StorageUnavailable
from piauth.storage.memory import (
    MemoryRateLimitStore,
    MemoryRevocationStore,
    MemorySessionStore,
)
from piauth.storage.redis_cache import RedisBackend

logger = get_logger(__name__)


class StoreNotReady(RuntimeError):
    """The shared store could not be reached while building the runtime."""


def redis_url_for_logs(url: Optional[str]) -> Optional[str]:
    """Hide the password in a Redis URL: redis://:pw@host -> redis://:***@host."""
    if not url:
        return url
    try:
        password = urlsplit(url).password
    except ValueError:
        return "***"
    if not password:
        return url
    return url.replace(f":{password}@", ":***@", 1)


class Runtime:
    """Composition root: builds every service from Settings and hands each its dependencies."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        principals: Optional[PrincipalDirectory] = None,
        credentials: Optional[CredentialVerifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.redis: Optional[RedisBackend] = None
        if self.settings.use_memory_store:
            self._use_memory_stores()
        else:
            try:
                backend = RedisBackend(
                    self.settings.redis_url,
                    retention_seconds=self.settings.session_retention_seconds,
                    socket_timeout=self.settings.store_call_timeout_seconds,
                )
                backend.verify_connection()
            except StorageUnavailable as exc:
                if not self.settings.test_mode:
                    raise StoreNotReady(
                        "Redis is required for shared sessions, revocations and rate limits; "
                        "start Redis or set USE_MEMORY_STORE=true for a single instance."
                    ) from exc
                logger.warning(
                    "redis_unavailable_fallback",
                    redis_url=redis_url_for_logs(self.settings.redis_url),
                    error=str(exc),
                )
                self._use_memory_stores()
            else:
                self.redis = backend
                self.sessions = backend.sessions
                self.revocations = backend.revocations
                self.rate_limits = backend.rate_limits
                logger.info(
                    "runtime_store_initialized",
                    store_type="redis",
                    redis_url=redis_url_for_logs(self.settings.redis_url),
                )

        self.session_breaker = self._breaker("session_store")
        self.revocation_breaker = self._breaker("revocation_store")
        self.rate_limit_breaker = self._breaker("rate_limit_store")
        self.pi_api_breaker = self._breaker(
            "pi_api", call_timeout=self.settings.pi_api_timeout_seconds + 1.0
        )

        self.tokens = TokenService(
            self.settings,
            self.sessions,
            self.revocations,
            session_breaker=self.session_breaker,
            revocation_breaker=self.revocation_breaker,
        )
        self.login_limiter = RateLimiter(
            self.rate_limits,
            name="login",
            attempts=self.settings.login_rate_limit_attempts,
            window_seconds=self.settings.login_rate_limit_window_seconds,
            block_seconds=self.settings.login_rate_limit_block_seconds,
            breaker=self.rate_limit_breaker,
        )
        self.refresh_limiter = RateLimiter(
            self.rate_limits,
            name="refresh",
            attempts=self.settings.refresh_rate_limit_attempts,
            window_seconds=self.settings.refresh_rate_limit_window_seconds,
            block_seconds=self.settings.refresh_rate_limit_block_seconds,
            breaker=self.rate_limit_breaker,
        )
        self.compliance = RegionalComplianceGate(
            kyc_required_for=self.settings.kyc_required_for
        )
        if principals is None:
            principals = (
                MemoryPrincipalDirectory.from_file(self.settings.principals_file)
                if self.settings.principals_file
                else MemoryPrincipalDirectory()
            )
        self.principals = principals
        if credentials is None:
            credentials = PiNetworkVerifier(
                self.settings.pi_api_base_url,
                timeout=self.settings.pi_api_timeout_seconds,
                breaker=self.pi_api_breaker,
            )
        self.credentials = credentials
        self.coordinator = AuthCoordinator(
            self.tokens,
            login_limiter=self.login_limiter,
            refresh_limiter=self.refresh_limiter,
            compliance=self.compliance,
            principals=self.principals,
            credentials=self.credentials,
        )
        self.sweeper = RevocationSweeper(
            [self.revocations, self.sessions, self.rate_limits],
            interval=self.settings.revocation_sweep_interval_seconds,
        )
        logger.info("runtime_init_complete")

    def _use_memory_stores(self) -> None:
        logger.warning(
            "memory_store_single_instance_only",
            message="Sessions and revocations are process-local; do not run more than one instance.",
        )
        self.sessions = MemorySessionStore(
            retention_seconds=self.settings.session_retention_seconds
        )
        self.revocations = MemoryRevocationStore()
        self.rate_limits = MemoryRateLimitStore()

    def _breaker(self, name: str, *, call_timeout: Optional[float] = None) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            failure_threshold=self.settings.breaker_failure_threshold,
            reset_timeout=self.settings.breaker_reset_timeout_seconds,
            call_timeout=call_timeout or self.settings.store_call_timeout_seconds,
        )

    async def close(self) -> None:
        await self.sweeper.stop()
        close_credentials = getattr(self.credentials, "close", None)
        if close_credentials is not None:
            await close_credentials()
        if self.redis is not None:
            await self.redis.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path when the runtime
    exists, then a locked re-check before creating it.
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
        if runtime is not None and runtime.redis is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.redis.close())
            except RuntimeError:
                asyncio.run(runtime.redis.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
