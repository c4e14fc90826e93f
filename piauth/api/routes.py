from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request

from piauth.api.schemas import (
    ClaimsResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    RefreshRequest,
    TokenPairResponse,
)
from piauth.logging import get_correlation_id, get_logger
from piauth.service.compliance import GeoLocation
from piauth.service.coordinator import LoginCredentials
from piauth.service.errors import AuthFailure, ServiceUnavailableError
from piauth.service.runtime import Runtime, StoreNotReady, get_runtime
from piauth.service.tokens import TokenClaims, TokenPair
from piauth.storage.models import DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

LOGOUT_MESSAGE = ("Logged out successfully", "تم تسجيل الخروج بنجاح")


def _runtime() -> Runtime:
    try:
        return get_runtime()
    except StoreNotReady as exc:
        logger.error("runtime_unavailable", error=str(exc))
        raise ServiceUnavailableError("authentication store unavailable") from exc


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return envelope


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _device_from_request(request: Request) -> DeviceInfo:
    """Collect the device attributes a client presents with every call."""
    headers = request.headers
    platform = headers.get("x-platform") or headers.get("sec-ch-ua-platform") or ""
    return DeviceInfo(
        device_id=headers.get("x-device-id", ""),
        user_agent=headers.get("user-agent", ""),
        platform=platform.strip('"'),
        app_version=headers.get("x-app-version", ""),
        ip_address=request.client.host if request.client else "",
    )


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        refresh_expires_in=pair.refresh_expires_in,
        session_id=pair.session_id,
        roles=pair.roles,
        permissions=pair.permissions,
    )


async def require_claims(
    request: Request, authorization: Optional[str] = Header(None)
) -> TokenClaims:
    """Verify the bearer access token and attach its claims to the request."""
    runtime = _runtime()
    result = await runtime.coordinator.verify(
        _bearer_token(authorization), _device_from_request(request)
    )
    if not result.ok:
        raise AuthFailure(result.error)
    request.state.auth_claims = result.value
    return result.value


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange a Pi Network access token for a session-bound token pair.

    Raises:
        401: Pi credentials rejected or unknown principal
        403: Compliance gate denied issuance
        429: Too many attempts from this IP
        503: A backing store or the Pi API is unavailable
    """
    runtime = _runtime()
    location = (
        GeoLocation(latitude=body.location.latitude, longitude=body.location.longitude)
        if body.location
        else None
    )
    result = await runtime.coordinator.login(
        LoginCredentials(pi_id=body.pi_id, access_token=body.access_token),
        _device_from_request(request),
        location,
    )
    if not result.ok:
        raise AuthFailure(result.error)
    return _ok(_pair_response(result.value))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    """Rotate a refresh token. The presented token is single-use."""
    runtime = _runtime()
    result = await runtime.coordinator.refresh(body.refresh_token, _device_from_request(request))
    if not result.ok:
        raise AuthFailure(result.error)
    return _ok(_pair_response(result.value))


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(claims: TokenClaims = Depends(require_claims)):
    return _ok(ClaimsResponse(**claims.public_view()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """End the session behind the bearer token.

    Succeeds for any token, valid or not, unless the session store is down.
    """
    runtime = _runtime()
    result = await runtime.coordinator.logout(_bearer_token(authorization))
    if not result.ok:
        raise AuthFailure(result.error)
    message, message_ar = LOGOUT_MESSAGE
    return _ok(LogoutResponse(message=message, message_ar=message_ar))
