from __future__ import annotations

import hashlib
import json
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from piauth.logging import get_logger
from piauth.storage.common import Clock, system_clock, to_datetime
from piauth.storage.errors import SessionInactive, SessionNotFound, StorageUnavailable
from piauth.storage.memory import new_session_id
from piauth.storage.models import DeviceBinding, RateDecision, Session

logger = get_logger(__name__)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate driver and socket failures into StorageUnavailable."""
    try:
        yield
    except (RedisError, OSError) as exc:
        logger.warning(
            "redis_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise StorageUnavailable(f"redis {operation} failed", {"operation": operation}) from exc


def _session_key(session_id: str) -> str:
    return f"auth:session:{session_id}"


def _revocation_key(token_id: str) -> str:
    return f"auth:revoked:{token_id}"


class RedisSessionStore:
    """Session rows as Redis hashes, shared by every service instance."""

    # Applies field updates only while the session is still active.
    # Returns -1 when the row is missing, 0 when inactive, 1 when applied.
    _GUARDED_UPDATE_SCRIPT = """
local key = KEYS[1]
local ttl = tonumber(ARGV[1])
local state = redis.call('HGET', key, 'is_active')
if not state then
  return -1
end
if state ~= '1' then
  return 0
end
for i = 2, #ARGV, 2 do
  redis.call('HSET', key, ARGV[i], ARGV[i + 1])
end
redis.call('EXPIRE', key, ttl)
return 1
"""

    def __init__(self, client: Any, *, retention_seconds: int, clock: Clock = system_clock) -> None:
        self.client = client
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._guarded_update = client.register_script(self._GUARDED_UPDATE_SCRIPT)

    async def create(self, user_id: str, fingerprint: str, salt: str, anchor: str) -> str:
        session_id = new_session_id()
        now = repr(self._clock())
        key = _session_key(session_id)
        with _storage_errors("session_create"):
            pipe = self.client.pipeline()
            pipe.hset(
                key,
                mapping={
                    "user_id": user_id,
                    "device_fingerprint": fingerprint,
                    "fingerprint_salt": salt,
                    "device_anchor": anchor,
                    "created_at": now,
                    "last_activity_at": now,
                    "is_active": "1",
                },
            )
            pipe.expire(key, self.retention_seconds)
            await pipe.execute()
        return session_id

    async def _load(self, session_id: str) -> Dict[str, str]:
        with _storage_errors("session_get"):
            return await self.client.hgetall(_session_key(session_id)) or {}

    async def get(self, session_id: str) -> Optional[Session]:
        row = await self._load(session_id)
        if not row:
            return None
        deactivated_at = row.get("deactivated_at")
        return Session(
            id=session_id,
            user_id=row["user_id"],
            device_fingerprint=row["device_fingerprint"],
            fingerprint_salt=row["fingerprint_salt"],
            device_anchor=row["device_anchor"],
            created_at=to_datetime(float(row["created_at"])),
            last_activity_at=to_datetime(float(row["last_activity_at"])),
            is_active=row.get("is_active") == "1",
            deactivated_at=to_datetime(float(deactivated_at)) if deactivated_at else None,
        )

    async def get_binding(self, session_id: str) -> DeviceBinding:
        row = await self._load(session_id)
        if not row:
            raise SessionNotFound("session not found", {"session_id": session_id})
        if row.get("is_active") != "1":
            raise SessionInactive("session inactive", {"session_id": session_id})
        return DeviceBinding(
            session_id=session_id,
            user_id=row["user_id"],
            fingerprint=row["device_fingerprint"],
            salt=row["fingerprint_salt"],
            anchor=row["device_anchor"],
        )

    async def _update_if_active(self, session_id: str, operation: str, **fields: str) -> int:
        args: list[Any] = [self.retention_seconds]
        for name, value in fields.items():
            args.extend([name, value])
        with _storage_errors(operation):
            return int(await self._guarded_update(keys=[_session_key(session_id)], args=args))

    async def rebind(self, session_id: str, fingerprint: str, salt: str, anchor: str) -> None:
        result = await self._update_if_active(
            session_id,
            "session_rebind",
            device_fingerprint=fingerprint,
            fingerprint_salt=salt,
            device_anchor=anchor,
            last_activity_at=repr(self._clock()),
        )
        if result == -1:
            raise SessionNotFound("session not found", {"session_id": session_id})
        if result == 0:
            raise SessionInactive("session inactive", {"session_id": session_id})

    async def touch(self, session_id: str) -> None:
        await self._update_if_active(
            session_id, "session_touch", last_activity_at=repr(self._clock())
        )

    async def deactivate(self, session_id: str) -> None:
        await self._update_if_active(
            session_id,
            "session_deactivate",
            is_active="0",
            deactivated_at=repr(self._clock()),
        )


class RedisRevocationStore:
    """Revoked token ids as self-expiring keys."""

    def __init__(self, client: Any, *, clock: Clock = system_clock) -> None:
        self.client = client
        self._clock = clock

    async def revoke(self, token_id: str, reason: str, ttl: int) -> bool:
        value = json.dumps({"reason": reason, "revoked_at": self._clock()})
        with _storage_errors("revoke"):
            created = await self.client.set(
                _revocation_key(token_id), value, nx=True, ex=max(1, int(ttl))
            )
        return bool(created)

    async def is_revoked(self, token_id: str) -> bool:
        with _storage_errors("is_revoked"):
            return bool(await self.client.exists(_revocation_key(token_id)))


class RedisRateLimitStore:
    """Sliding-window rate limiting over a sorted set of attempt timestamps."""

    # Atomic sliding window with cooldown. Returns {allowed, retry_after, remaining}.
    _SLIDING_WINDOW_SCRIPT = """
local hits_key = KEYS[1]
local block_key = KEYS[2]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local block = tonumber(ARGV[4])
local member = ARGV[5]

local blocked_ttl = redis.call('TTL', block_key)
if blocked_ttl > 0 then
  return {0, blocked_ttl, 0}
end

redis.call('ZREMRANGEBYSCORE', hits_key, '-inf', now - window)
local count = redis.call('ZCARD', hits_key)
if count >= limit then
  redis.call('DEL', hits_key)
  redis.call('SET', block_key, '1', 'EX', block)
  return {0, block, 0}
end

redis.call('ZADD', hits_key, now, member)
redis.call('EXPIRE', hits_key, window)
return {1, 0, limit - count - 1}
"""

    def __init__(self, client: Any, *, clock: Clock = system_clock) -> None:
        self.client = client
        self._clock = clock
        self._sliding_window = client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the actor key so IPs and device ids cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"auth:rl:{digest}"

    async def hit(
        self, key: str, *, limit: int, window_seconds: int, block_seconds: int
    ) -> RateDecision:
        base = self._normalize_rate_key(key)
        now = self._clock()
        with _storage_errors("rate_limit"):
            allowed, retry_after, remaining = await self._sliding_window(
                keys=[base, f"{base}:block"],
                args=[now, window_seconds, limit, block_seconds, f"{now}:{uuid.uuid4().hex}"],
            )
        return RateDecision(
            allowed=bool(int(allowed)),
            retry_after=int(retry_after),
            remaining=int(remaining),
        )


class RedisBackend:
    """Owns the shared Redis client and the three stores built on it."""

    def __init__(
        self,
        redis_url: str,
        *,
        retention_seconds: int,
        socket_timeout: float = 5.0,
        clock: Clock = system_clock,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.sessions = RedisSessionStore(
            self.client, retention_seconds=retention_seconds, clock=clock
        )
        self.revocations = RedisRevocationStore(self.client, clock=clock)
        self.rate_limits = RedisRateLimitStore(self.client, clock=clock)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # A short-lived sync client keeps the async pool off a temporary event loop.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            with _storage_errors("ping"):
                sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()


__all__ = [
    "RedisBackend",
    "RedisSessionStore",
    "RedisRevocationStore",
    "RedisRateLimitStore",
]
