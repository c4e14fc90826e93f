from __future__ import annotations

from typing import Optional

from piauth.logging import get_logger
from piauth.service.circuit_breaker import CircuitBreaker
from piauth.storage.common import RateLimitStore
from piauth.storage.models import RateDecision

logger = get_logger(__name__)


class RateLimiter:
    """N attempts per sliding window per actor, then a cooldown.

    Raises DependencyUnavailable when the counter store is down; the caller
    decides whether that fails open or closed.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        name: str,
        attempts: int,
        window_seconds: int,
        block_seconds: int,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.store = store
        self.name = name
        self.attempts = attempts
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self.breaker = breaker

    async def consume(self, key: str) -> RateDecision:
        scoped_key = f"{self.name}:{key}"
        kwargs = dict(
            limit=self.attempts,
            window_seconds=self.window_seconds,
            block_seconds=self.block_seconds,
        )
        if self.breaker is not None:
            decision = await self.breaker.call(self.store.hit, scoped_key, **kwargs)
        else:
            decision = await self.store.hit(scoped_key, **kwargs)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self.name,
                retry_after=decision.retry_after,
            )
        return decision


__all__ = ["RateLimiter"]
