"""Entry point for the HTTP layer: login, verify, refresh and logout.

Each operation runs its gates in a fixed order and stops at the first one
that fails. Outcomes always come back as an ``AuthResult``; nothing raised
inside the auth core escapes to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from piauth.logging import get_logger
from piauth.service.circuit_breaker import FAILURE_EXCEPTIONS
from piauth.service.compliance import ComplianceGate, GeoLocation
from piauth.service.errors import (
    AuthErrorKind,
    AuthFailure,
    AuthResult,
    DependencyUnavailable,
)
from piauth.service.principals import CredentialVerifier, PrincipalDirectory
from piauth.service.rate_limit import RateLimiter
from piauth.service.tokens import ACCESS, TokenClaims, TokenPair, TokenService
from piauth.storage.models import DeviceInfo, Principal

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LoginCredentials:
    pi_id: str
    access_token: str


def _actor(device: DeviceInfo, *, prefer_device: bool) -> str:
    if prefer_device and device.device_id.strip():
        return f"device:{device.device_id.strip()}"
    if device.ip_address:
        return f"ip:{device.ip_address}"
    return "anonymous"


class AuthCoordinator:
    def __init__(
        self,
        tokens: TokenService,
        *,
        login_limiter: RateLimiter,
        refresh_limiter: RateLimiter,
        compliance: ComplianceGate,
        principals: PrincipalDirectory,
        credentials: CredentialVerifier,
    ) -> None:
        self.tokens = tokens
        self.login_limiter = login_limiter
        self.refresh_limiter = refresh_limiter
        self.compliance = compliance
        self.principals = principals
        self.credentials = credentials

    async def _dependency(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        try:
            return await func(*args)
        except DependencyUnavailable as exc:
            raise AuthFailure.of(
                AuthErrorKind.DEPENDENCY_UNAVAILABLE, retry_after=exc.retry_after
            ) from exc
        except FAILURE_EXCEPTIONS as exc:
            raise AuthFailure.of(AuthErrorKind.DEPENDENCY_UNAVAILABLE) from exc

    async def _throttle(self, limiter: RateLimiter, key: str) -> None:
        decision = await self._dependency(limiter.consume, key)
        if not decision.allowed:
            raise AuthFailure.of(AuthErrorKind.RATE_LIMITED, retry_after=decision.retry_after)

    async def _resolve_principal(self, credentials: LoginCredentials) -> Principal:
        if not credentials.pi_id or not credentials.access_token:
            raise AuthFailure.of(AuthErrorKind.MISSING_CREDENTIAL)
        if not await self._dependency(
            self.credentials.verify, credentials.pi_id, credentials.access_token
        ):
            raise AuthFailure.of(AuthErrorKind.INVALID_CREDENTIALS)
        principal = await self._dependency(self.principals.get_by_pi_id, credentials.pi_id)
        if principal is None:
            logger.info("login_unknown_principal")
            raise AuthFailure.of(AuthErrorKind.INVALID_CREDENTIALS)
        return principal

    async def login(
        self,
        credentials: LoginCredentials,
        device: DeviceInfo,
        location: Optional[GeoLocation] = None,
    ) -> AuthResult[TokenPair]:
        try:
            await self._throttle(self.login_limiter, _actor(device, prefer_device=False))
            principal = await self._resolve_principal(credentials)
            decision = await self.compliance.check(principal, location, principal.kyc_status)
            if not decision.allowed:
                raise AuthFailure.of(AuthErrorKind.COMPLIANCE_DENIED, reason=decision.reason)
        except AuthFailure as exc:
            logger.info("login_rejected", kind=exc.error.kind.value, reason=exc.error.reason)
            return AuthResult(error=exc.error)

        result = await self.tokens.issue(principal, device)
        if result.ok:
            logger.info("login_succeeded", user_id=principal.user_id)
        return result

    async def verify(self, token: Optional[str], device: DeviceInfo) -> AuthResult[TokenClaims]:
        if not token:
            return AuthResult.failure(AuthErrorKind.MISSING_CREDENTIAL)
        return await self.tokens.verify(token, device, expected_kind=ACCESS)

    async def refresh(self, token: Optional[str], device: DeviceInfo) -> AuthResult[TokenPair]:
        try:
            await self._throttle(self.refresh_limiter, _actor(device, prefer_device=True))
        except AuthFailure as exc:
            logger.info("refresh_rejected", kind=exc.error.kind.value)
            return AuthResult(error=exc.error)
        if not token:
            return AuthResult.failure(AuthErrorKind.MISSING_CREDENTIAL)
        return await self.tokens.refresh(token, device)

    async def logout(self, token: Optional[str]) -> AuthResult[bool]:
        """Acknowledge every logout, valid token or not.

        The only failure reported is an unreachable store, because then the
        session may still be live and the caller must retry.
        """
        result = await self.tokens.revoke(token, reason="logout")
        if not result.ok and result.error.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE:
            return result
        return AuthResult.success(bool(result.value))


__all__ = ["AuthCoordinator", "LoginCredentials"]
