from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class AuthErrorKind(str, Enum):
    """Closed set of outcomes an auth operation can fail with."""

    MISSING_CREDENTIAL = "missing_credential"
    MALFORMED_TOKEN = "malformed_token"
    SIGNATURE_INVALID = "signature_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    SCHEME_VERSION_MISMATCH = "scheme_version_mismatch"
    DEVICE_BINDING_MISMATCH = "device_binding_mismatch"
    SESSION_INACTIVE = "session_inactive"
    RATE_LIMITED = "rate_limited"
    COMPLIANCE_DENIED = "compliance_denied"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    INVALID_CREDENTIALS = "invalid_credentials"


@dataclass(frozen=True)
class AuthError:
    kind: AuthErrorKind
    retry_after: Optional[int] = None
    reason: Optional[str] = None

    @property
    def retryable(self) -> bool:
        """Only a dependency outage is worth retrying with backoff."""
        return self.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    """Either a value or an AuthError, never both."""

    value: Optional[T] = None
    error: Optional[AuthError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: AuthErrorKind,
        *,
        retry_after: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> "AuthResult[T]":
        return cls(error=AuthError(kind=kind, retry_after=retry_after, reason=reason))


class AuthFailure(Exception):
    """Carries an AuthError up the stack inside a single service.

    Public operations catch it and return ``AuthResult.failure`` instead.
    """

    def __init__(self, error: AuthError) -> None:
        super().__init__(error.kind.value)
        self.error = error

    @classmethod
    def of(
        cls,
        kind: AuthErrorKind,
        *,
        retry_after: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> "AuthFailure":
        return cls(AuthError(kind=kind, retry_after=retry_after, reason=reason))


class DependencyUnavailable(Exception):
    """A protected dependency is failing or its circuit is open."""

    def __init__(self, dependency: str, retry_after: Optional[int] = None) -> None:
        super().__init__(f"{dependency} unavailable")
        self.dependency = dependency
        self.retry_after = retry_after


class UpstreamError(Exception):
    """An upstream HTTP API answered with a server error or an unreadable body."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines both an HTTP status_code and a stable error_code.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ServiceUnavailableError(ServiceError):
    """A backing dependency is down (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "AuthErrorKind",
    "AuthError",
    "AuthResult",
    "AuthFailure",
    "DependencyUnavailable",
    "UpstreamError",
    "ServiceError",
    "ServiceUnavailableError",
]
