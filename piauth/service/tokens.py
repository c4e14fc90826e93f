from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from piauth.config import Settings
from piauth.logging import get_logger
from piauth.service import fingerprint
from piauth.service.circuit_breaker import CircuitBreaker
from piauth.service.errors import (
    AuthErrorKind,
    AuthFailure,
    AuthResult,
    DependencyUnavailable,
)
from piauth.storage.common import RevocationStore, SessionStore
from piauth.storage.errors import SessionInactive, SessionNotFound, StorageUnavailable
from piauth.storage.models import DeviceBinding, DeviceInfo, Principal

logger = get_logger(__name__)

T = TypeVar("T")

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)

BASE_PERMISSIONS = ["view_listings"]
MERCHANT_PERMISSIONS = ["create_listing", "manage_inventory"]


def permissions_for(is_merchant: bool) -> List[str]:
    if is_merchant:
        return BASE_PERMISSIONS + MERCHANT_PERMISSIONS
    return list(BASE_PERMISSIONS)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    pi_id: str
    roles: Tuple[str, ...]
    is_merchant: bool
    session_id: str
    device_fingerprint: str
    scheme_version: str
    issued_at: int
    expires_at: int
    token_id: str
    kind: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        """Build claims from a decoded payload.

        Raises KeyError, TypeError or ValueError when a claim is missing or
        has the wrong shape.
        """
        roles = payload["roles"]
        if not isinstance(roles, list):
            raise TypeError("roles must be a list")
        return cls(
            user_id=str(payload["uid"]),
            pi_id=str(payload["pi_id"]),
            roles=tuple(str(role) for role in roles),
            is_merchant=bool(payload.get("merchant", False)),
            session_id=str(payload["sid"]),
            device_fingerprint=str(payload["dfp"]),
            scheme_version=str(payload["ver"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            token_id=str(payload["jti"]),
            kind=str(payload["token_type"]),
        )

    def public_view(self) -> dict[str, Any]:
        """Claims safe to hand back to a client: everything but the fingerprint."""
        data = asdict(self)
        data.pop("device_fingerprint")
        data["roles"] = list(self.roles)
        data["permissions"] = permissions_for(self.is_merchant)
        return data


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    session_id: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    token_type: str = "Bearer"


class TokenService:
    """Issues, verifies, rotates and revokes session-bound bearer tokens.

    Tokens are HS256 JWTs carrying the session id and the device fingerprint
    bound to that session. The session store is the authority on which
    fingerprint a session is bound to; a token only verifies while its
    embedded fingerprint still matches that binding.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        revocations: RevocationStore,
        *,
        session_breaker: Optional[CircuitBreaker] = None,
        revocation_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.revocations = revocations
        self.session_breaker = session_breaker
        self.revocation_breaker = revocation_breaker
        self._clock = clock

    # -- encoding -----------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT", "ver": self.settings.token_scheme_version}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: Optional[str], *, allow_expired: bool = False) -> TokenClaims:
        """Check structure, signature and expiry. Raises AuthFailure."""
        if not token:
            raise AuthFailure.of(AuthErrorKind.MISSING_CREDENTIAL)
        parts = token.split(".")
        if len(parts) != 3:
            raise AuthFailure.of(AuthErrorKind.MALFORMED_TOKEN)
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            raise AuthFailure.of(AuthErrorKind.MALFORMED_TOKEN) from None
        if not isinstance(header, dict):
            raise AuthFailure.of(AuthErrorKind.MALFORMED_TOKEN)
        # Reject anything but HS256 before touching the signature to rule out
        # algorithm confusion.
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise AuthFailure.of(AuthErrorKind.SIGNATURE_INVALID)
        if header.get("ver") != self.settings.token_scheme_version:
            raise AuthFailure.of(AuthErrorKind.SCHEME_VERSION_MISMATCH)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise AuthFailure.of(AuthErrorKind.SIGNATURE_INVALID)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
            claims = TokenClaims.from_payload(payload)
        except (ValueError, KeyError, TypeError):
            raise AuthFailure.of(AuthErrorKind.MALFORMED_TOKEN) from None
        if payload.get("iss") != self.settings.jwt_issuer:
            raise AuthFailure.of(AuthErrorKind.SIGNATURE_INVALID)
        if claims.scheme_version != self.settings.token_scheme_version:
            raise AuthFailure.of(AuthErrorKind.SCHEME_VERSION_MISMATCH)
        if not allow_expired:
            if claims.expires_at <= self._clock() - self.settings.clock_skew_leeway_seconds:
                raise AuthFailure.of(AuthErrorKind.TOKEN_EXPIRED)
        if claims.kind not in TOKEN_KINDS:
            raise AuthFailure.of(AuthErrorKind.MALFORMED_TOKEN)
        return claims

    def _claims_payload(
        self,
        *,
        kind: str,
        user_id: str,
        pi_id: str,
        roles: List[str],
        is_merchant: bool,
        session_id: str,
        device_fingerprint: str,
        issued_at: int,
        ttl: int,
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "sub": pi_id,
            "uid": user_id,
            "pi_id": pi_id,
            "roles": list(roles),
            "merchant": is_merchant,
            "sid": session_id,
            "dfp": device_fingerprint,
            "ver": self.settings.token_scheme_version,
            "iat": issued_at,
            "exp": issued_at + ttl,
            "jti": str(uuid.uuid4()),
            "token_type": kind,
        }

    def _mint_pair(
        self,
        *,
        user_id: str,
        pi_id: str,
        roles: List[str],
        is_merchant: bool,
        session_id: str,
        device_fingerprint: str,
    ) -> TokenPair:
        now = int(self._clock())
        common = dict(
            user_id=user_id,
            pi_id=pi_id,
            roles=roles,
            is_merchant=is_merchant,
            session_id=session_id,
            device_fingerprint=device_fingerprint,
            issued_at=now,
        )
        access = self._claims_payload(
            kind=ACCESS, ttl=self.settings.access_token_ttl_seconds, **common
        )
        refresh = self._claims_payload(
            kind=REFRESH, ttl=self.settings.refresh_token_ttl_seconds, **common
        )
        return TokenPair(
            access_token=self._encode_jwt(access),
            refresh_token=self._encode_jwt(refresh),
            expires_in=self.settings.access_token_ttl_seconds,
            refresh_expires_in=self.settings.refresh_token_ttl_seconds,
            session_id=session_id,
            roles=list(roles),
            permissions=permissions_for(is_merchant),
        )

    # -- store access -------------------------------------------------------

    async def _guard(
        self,
        breaker: Optional[CircuitBreaker],
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        try:
            if breaker is not None:
                return await breaker.call(func, *args)
            return await func(*args)
        except DependencyUnavailable as exc:
            raise AuthFailure.of(
                AuthErrorKind.DEPENDENCY_UNAVAILABLE, retry_after=exc.retry_after
            ) from exc
        except StorageUnavailable as exc:
            raise AuthFailure.of(AuthErrorKind.DEPENDENCY_UNAVAILABLE) from exc

    async def _session_call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        try:
            return await self._guard(self.session_breaker, func, *args)
        except SessionNotFound:
            # A token naming a session this service never created cannot be bound to it.
            raise AuthFailure.of(AuthErrorKind.DEVICE_BINDING_MISMATCH) from None
        except SessionInactive:
            raise AuthFailure.of(AuthErrorKind.SESSION_INACTIVE) from None

    async def _authenticate(
        self,
        token: Optional[str],
        device: DeviceInfo,
        *,
        expected_kind: Optional[str],
        anchor_only: bool,
    ) -> Tuple[TokenClaims, DeviceBinding]:
        claims = self._decode_jwt(token)
        if await self._guard(self.revocation_breaker, self.revocations.is_revoked, claims.token_id):
            raise AuthFailure.of(AuthErrorKind.TOKEN_REVOKED)

        if expected_kind is not None and claims.kind != expected_kind:
            raise AuthFailure.of(AuthErrorKind.MALFORMED_TOKEN)

        binding: DeviceBinding = await self._session_call(
            self.sessions.get_binding, claims.session_id
        )
        if binding.user_id != claims.user_id or not fingerprint.matches(
            binding.fingerprint, claims.device_fingerprint
        ):
            raise AuthFailure.of(AuthErrorKind.DEVICE_BINDING_MISMATCH)

        if anchor_only:
            presented_ok = fingerprint.matches(
                binding.anchor, fingerprint.derive_anchor(device, binding.salt)
            )
        else:
            presented_ok = fingerprint.matches(
                binding.fingerprint, fingerprint.derive(device, binding.salt)
            )
        if not presented_ok:
            raise AuthFailure.of(AuthErrorKind.DEVICE_BINDING_MISMATCH)
        return claims, binding

    # -- public operations --------------------------------------------------

    async def issue(self, principal: Principal, device: DeviceInfo) -> AuthResult[TokenPair]:
        """Open a new session bound to ``device`` and mint its first token pair.

        Compliance gating is the caller's job and must happen before this.
        """
        try:
            salt = fingerprint.new_salt()
            device_fp = fingerprint.derive(device, salt)
            anchor = fingerprint.derive_anchor(device, salt)
            session_id = await self._session_call(
                self.sessions.create, principal.user_id, device_fp, salt, anchor
            )
            pair = self._mint_pair(
                user_id=principal.user_id,
                pi_id=principal.pi_id,
                roles=list(principal.roles),
                is_merchant=principal.is_merchant,
                session_id=session_id,
                device_fingerprint=device_fp,
            )
        except AuthFailure as exc:
            logger.warning("token_issue_failed", kind=exc.error.kind.value)
            return AuthResult(error=exc.error)
        logger.info("tokens_issued", user_id=principal.user_id, session_id=session_id)
        return AuthResult.success(pair)

    async def verify(
        self,
        token: Optional[str],
        device: DeviceInfo,
        *,
        expected_kind: Optional[str] = None,
    ) -> AuthResult[TokenClaims]:
        try:
            claims, _ = await self._authenticate(
                token, device, expected_kind=expected_kind, anchor_only=False
            )
            await self._session_call(self.sessions.touch, claims.session_id)
        except AuthFailure as exc:
            logger.info("token_verify_failed", kind=exc.error.kind.value)
            return AuthResult(error=exc.error)
        return AuthResult.success(claims)

    async def refresh(self, token: Optional[str], device: DeviceInfo) -> AuthResult[TokenPair]:
        """Rotate a refresh token into a new pair on the same session.

        The presented refresh token is consumed by an atomic revocation claim,
        so of two concurrent refreshes with the same token exactly one wins.
        A device whose identity fields still match but whose user agent or app
        version changed gets a fresh salt and the session is rebound to it.
        Once the token is claimed, a session store outage no longer fails the
        call: the pair is minted against the binding the session already has.
        """
        try:
            claims, binding = await self._authenticate(
                token, device, expected_kind=REFRESH, anchor_only=True
            )
            remaining = max(1, claims.expires_at - int(self._clock()))
            claimed = await self._guard(
                self.revocation_breaker,
                self.revocations.revoke,
                claims.token_id,
                "rotated",
                remaining,
            )
            if not claimed:
                raise AuthFailure.of(AuthErrorKind.TOKEN_REVOKED)

            # The token is spent from here on: session store outages are logged, not returned.
            device_fp = binding.fingerprint
            if fingerprint.matches(binding.fingerprint, fingerprint.derive(device, binding.salt)):
                try:
                    await self._session_call(self.sessions.touch, claims.session_id)
                except AuthFailure as exc:
                    if exc.error.kind is not AuthErrorKind.DEPENDENCY_UNAVAILABLE:
                        raise
                    logger.warning("session_touch_deferred", session_id=claims.session_id)
            else:
                device_fp = await self._rebind_after_claim(claims, binding, device)

            pair = self._mint_pair(
                user_id=claims.user_id,
                pi_id=claims.pi_id,
                roles=list(claims.roles),
                is_merchant=claims.is_merchant,
                session_id=claims.session_id,
                device_fingerprint=device_fp,
            )
        except AuthFailure as exc:
            logger.warning("token_refresh_failed", kind=exc.error.kind.value)
            return AuthResult(error=exc.error)
        logger.info("tokens_rotated", user_id=claims.user_id, session_id=claims.session_id)
        return AuthResult.success(pair)

    async def _rebind_after_claim(
        self, claims: TokenClaims, binding: DeviceBinding, device: DeviceInfo
    ) -> str:
        """Rebind the session to a fresh salt, keeping the old fingerprint on outage.

        A deferred rebind leaves the session on its current binding; the
        anchor still matches, so the next refresh retries the rebind.
        """
        salt = fingerprint.new_salt()
        device_fp = fingerprint.derive(device, salt)
        anchor = fingerprint.derive_anchor(device, salt)
        try:
            await self._session_call(
                self.sessions.rebind, claims.session_id, device_fp, salt, anchor
            )
        except AuthFailure as exc:
            if exc.error.kind is not AuthErrorKind.DEPENDENCY_UNAVAILABLE:
                raise
            logger.warning("session_rebind_deferred", session_id=claims.session_id)
            return binding.fingerprint
        logger.info("session_device_rebound", session_id=claims.session_id)
        return device_fp

    async def revoke(self, token: Optional[str], reason: str = "logout") -> AuthResult[bool]:
        """Revoke a token and deactivate its whole session.

        Expired but correctly signed tokens still end their session. Tokens
        that fail signature checks are acknowledged without side effects,
        since their session id cannot be trusted. The value is True when a
        session was actually ended.
        """
        try:
            claims = self._decode_jwt(token, allow_expired=True)
        except AuthFailure as exc:
            logger.info("token_revoke_ignored", kind=exc.error.kind.value)
            return AuthResult.success(False)

        try:
            remaining = claims.expires_at - int(self._clock())
            if remaining > 0:
                await self._guard(
                    self.revocation_breaker,
                    self.revocations.revoke,
                    claims.token_id,
                    reason,
                    remaining,
                )
            await self._session_call(self.sessions.deactivate, claims.session_id)
        except AuthFailure as exc:
            logger.warning("token_revoke_failed", kind=exc.error.kind.value)
            return AuthResult(error=exc.error)
        logger.info(
            "session_revoked",
            user_id=claims.user_id,
            session_id=claims.session_id,
            reason=reason,
        )
        return AuthResult.success(True)


__all__ = [
    "ACCESS",
    "REFRESH",
    "TokenClaims",
    "TokenPair",
    "TokenService",
    "permissions_for",
]
