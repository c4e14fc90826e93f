"""In-process stores.

These keep state in the memory of one Python process. A token revoked on
one instance stays valid on every other instance, so they are only correct
for a single-instance deployment, local development and tests. Anything
else must use the Redis backend in ``piauth.storage.redis_cache``.
"""

from __future__ import annotations

import math
import secrets
import threading
from collections import deque
from dataclasses import replace
from typing import Deque, Dict, Optional

from piauth.logging import get_logger
from piauth.storage.common import Clock, system_clock, to_datetime
from piauth.storage.errors import SessionInactive, SessionNotFound
from piauth.storage.models import DeviceBinding, RateDecision, RevocationEntry, Session

logger = get_logger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


class MemorySessionStore:
    """Session rows keyed by session id, guarded by a single lock."""

    def __init__(self, *, retention_seconds: int, clock: Clock = system_clock) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.retention_seconds = retention_seconds

    async def create(self, user_id: str, fingerprint: str, salt: str, anchor: str) -> str:
        now = to_datetime(self._clock())
        with self._lock:
            session_id = new_session_id()
            while session_id in self._sessions:
                session_id = new_session_id()
            self._sessions[session_id] = Session(
                id=session_id,
                user_id=user_id,
                device_fingerprint=fingerprint,
                fingerprint_salt=salt,
                device_anchor=anchor,
                created_at=now,
                last_activity_at=now,
            )
        return session_id

    async def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    async def get_binding(self, session_id: str) -> DeviceBinding:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound("session not found", {"session_id": session_id})
            if not session.is_active:
                raise SessionInactive("session inactive", {"session_id": session_id})
            return DeviceBinding(
                session_id=session.id,
                user_id=session.user_id,
                fingerprint=session.device_fingerprint,
                salt=session.fingerprint_salt,
                anchor=session.device_anchor,
            )

    async def rebind(self, session_id: str, fingerprint: str, salt: str, anchor: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound("session not found", {"session_id": session_id})
            if not session.is_active:
                raise SessionInactive("session inactive", {"session_id": session_id})
            session.device_fingerprint = fingerprint
            session.fingerprint_salt = salt
            session.device_anchor = anchor
            session.last_activity_at = to_datetime(self._clock())

    async def touch(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active:
                return
            session.last_activity_at = to_datetime(self._clock())

    async def deactivate(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active:
                return
            session.is_active = False
            session.deactivated_at = to_datetime(self._clock())

    async def sweep_expired(self) -> int:
        """Drop sessions that have seen no activity for the retention period."""
        cutoff = to_datetime(self._clock() - self.retention_seconds)
        with self._lock:
            stale = [
                sid
                for sid, session in self._sessions.items()
                if (session.deactivated_at or session.last_activity_at) < cutoff
            ]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.info("memory_sessions_swept", removed=len(stale))
        return len(stale)


class MemoryRevocationStore:
    """Revoked token ids with an absolute expiry per entry."""

    def __init__(self, *, clock: Clock = system_clock) -> None:
        self._entries: Dict[str, RevocationEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def revoke(self, token_id: str, reason: str, ttl: int) -> bool:
        now = self._clock()
        with self._lock:
            existing = self._entries.get(token_id)
            if existing is not None and existing.expires_at > to_datetime(now):
                return False
            self._entries[token_id] = RevocationEntry(
                token_id=token_id,
                reason=reason,
                revoked_at=to_datetime(now),
                expires_at=to_datetime(now + max(1, int(ttl))),
            )
            return True

    async def is_revoked(self, token_id: str) -> bool:
        now = to_datetime(self._clock())
        with self._lock:
            entry = self._entries.get(token_id)
            return entry is not None and entry.expires_at > now

    async def get(self, token_id: str) -> Optional[RevocationEntry]:
        with self._lock:
            return self._entries.get(token_id)

    async def sweep_expired(self) -> int:
        now = to_datetime(self._clock())
        with self._lock:
            expired = [jti for jti, entry in self._entries.items() if entry.expires_at <= now]
            for jti in expired:
                del self._entries[jti]
        if expired:
            logger.info("memory_revocations_swept", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MemoryRateLimitStore:
    """Sliding-window attempt log per actor key, with a cooldown once the limit is hit."""

    def __init__(self, *, clock: Clock = system_clock) -> None:
        self._hits: Dict[str, Deque[float]] = {}
        self._blocked_until: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def hit(
        self, key: str, *, limit: int, window_seconds: int, block_seconds: int
    ) -> RateDecision:
        now = self._clock()
        with self._lock:
            blocked_until = self._blocked_until.get(key)
            if blocked_until is not None:
                if blocked_until > now:
                    return RateDecision(
                        allowed=False, retry_after=max(1, math.ceil(blocked_until - now))
                    )
                # cooldown elapsed: the counter starts over
                del self._blocked_until[key]
                self._hits.pop(key, None)

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()

            if len(hits) >= limit:
                self._blocked_until[key] = now + block_seconds
                hits.clear()
                return RateDecision(allowed=False, retry_after=max(1, int(block_seconds)))

            hits.append(now)
            return RateDecision(allowed=True, remaining=limit - len(hits))

    async def sweep_expired(self, *, max_window_seconds: int = 3600) -> int:
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._blocked_until):
                if self._blocked_until[key] <= now:
                    del self._blocked_until[key]
            for key in list(self._hits):
                hits = self._hits[key]
                if not hits or hits[-1] <= now - max_window_seconds:
                    del self._hits[key]
                    removed += 1
        return removed


__all__ = [
    "MemorySessionStore",
    "MemoryRevocationStore",
    "MemoryRateLimitStore",
    "new_session_id",
]
