"""Storage interfaces shared by the memory and Redis backends.

Every method is a coroutine so callers can wrap any backend in a timeout
and a circuit breaker without caring which one is configured.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from piauth.storage.models import DeviceBinding, RateDecision, Session

Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


def to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class SessionStore(Protocol):
    async def create(
        self, user_id: str, fingerprint: str, salt: str, anchor: str
    ) -> str: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def get_binding(self, session_id: str) -> DeviceBinding:
        """Return the active binding or raise SessionNotFound / SessionInactive."""
        ...

    async def rebind(
        self, session_id: str, fingerprint: str, salt: str, anchor: str
    ) -> None: ...

    async def touch(self, session_id: str) -> None: ...

    async def deactivate(self, session_id: str) -> None: ...


class RevocationStore(Protocol):
    async def revoke(self, token_id: str, reason: str, ttl: int) -> bool:
        """Record a revocation. Returns True only for the call that created the entry."""
        ...

    async def is_revoked(self, token_id: str) -> bool: ...


class RateLimitStore(Protocol):
    async def hit(
        self, key: str, *, limit: int, window_seconds: int, block_seconds: int
    ) -> RateDecision: ...


__all__ = [
    "Clock",
    "system_clock",
    "to_datetime",
    "SessionStore",
    "RevocationStore",
    "RateLimitStore",
]
