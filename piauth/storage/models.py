from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class Principal:
    """Read-only view of a user record owned by the principal directory."""

    user_id: str
    pi_id: str
    roles: List[str] = field(default_factory=lambda: ["user"])
    is_merchant: bool = False
    kyc_status: str = "pending"


@dataclass(frozen=True)
class DeviceInfo:
    """Client-supplied device attributes. Never persisted verbatim."""

    device_id: str = ""
    user_agent: str = ""
    platform: str = ""
    app_version: str = ""
    ip_address: str = ""


@dataclass
class Session:
    id: str
    user_id: str
    device_fingerprint: str
    fingerprint_salt: str
    device_anchor: str
    created_at: datetime
    last_activity_at: datetime
    is_active: bool = True
    deactivated_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeviceBinding:
    """The fingerprint a session is currently bound to, plus what is needed to re-derive it."""

    session_id: str
    user_id: str
    fingerprint: str
    salt: str
    anchor: str


@dataclass(frozen=True)
class RevocationEntry:
    token_id: str
    reason: str
    revoked_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


__all__ = [
    "Principal",
    "DeviceInfo",
    "Session",
    "DeviceBinding",
    "RevocationEntry",
    "RateDecision",
]
