"""Async circuit breaker for remote dependencies.

The breaker counts consecutive failures of the wrapped calls. Once the
threshold is reached it opens and rejects calls immediately until the reset
timeout passes. The first call after that runs as a half-open trial: success
closes the circuit, failure opens it again.

State lives in this process only. Each instance protects itself and the
shared store does not learn about other instances' breakers.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx

from piauth.logging import get_logger
from piauth.service.errors import DependencyUnavailable, UpstreamError
from piauth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

FAILURE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    StorageUnavailable,
    UpstreamError,
    asyncio.TimeoutError,
    httpx.TransportError,
)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        call_timeout: Optional[float] = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def _admit(self) -> None:
        with self._lock:
            if self._state is BreakerState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed < self.reset_timeout:
                    raise DependencyUnavailable(
                        self.name, retry_after=max(1, math.ceil(self.reset_timeout - elapsed))
                    )
                self._state = BreakerState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("circuit_half_open", breaker=self.name)
            if self._state is BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise DependencyUnavailable(self.name, retry_after=1)
                self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state is not BreakerState.CLOSED:
                logger.info("circuit_closed", breaker=self.name)
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def _on_failure(self, exc: BaseException) -> None:
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._state is BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state is not BreakerState.OPEN:
                    logger.warning(
                        "circuit_opened",
                        breaker=self.name,
                        failures=self._failures,
                        error_type=type(exc).__name__,
                    )
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` under the breaker.

        Raises DependencyUnavailable when the circuit is open or when the call
        fails with a dependency error. Any other exception is a real answer
        from the dependency: it resets the failure count and propagates as is.
        """
        self._admit()
        try:
            if self.call_timeout:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
            else:
                result = await func(*args, **kwargs)
        except FAILURE_EXCEPTIONS as exc:
            self._on_failure(exc)
            raise DependencyUnavailable(self.name) from exc
        except asyncio.CancelledError:
            self._release_trial()
            raise
        except Exception:
            self._on_success()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._trial_in_flight = False


__all__ = ["BreakerState", "CircuitBreaker", "FAILURE_EXCEPTIONS"]
