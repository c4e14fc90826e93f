from __future__ import annotations

from typing import Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from piauth.api.schemas import Envelope, ErrorBody
from piauth.logging import get_correlation_id, get_logger, sanitize_error_message
from piauth.service.compliance import (
    REASON_KYC_REQUIRED,
    REASON_LOCATION_REQUIRED,
    REASON_OUTSIDE_REGION,
)
from piauth.service.errors import AuthError, AuthErrorKind, AuthFailure, ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}

_INVALID_TOKEN = ("Invalid authentication token", "رمز المصادقة غير صالح")

# kind -> (HTTP status, English message, Arabic message)
_KIND_RESPONSES: Dict[AuthErrorKind, Tuple[int, str, str]] = {
    AuthErrorKind.MISSING_CREDENTIAL: (
        401,
        "Authentication token required",
        "رمز المصادقة مطلوب",
    ),
    AuthErrorKind.MALFORMED_TOKEN: (401, *_INVALID_TOKEN),
    AuthErrorKind.SIGNATURE_INVALID: (401, *_INVALID_TOKEN),
    AuthErrorKind.TOKEN_EXPIRED: (
        401,
        "Authentication token expired",
        "انتهت صلاحية رمز المصادقة",
    ),
    AuthErrorKind.TOKEN_REVOKED: (
        401,
        "Authentication token has been revoked",
        "تم إلغاء رمز المصادقة",
    ),
    AuthErrorKind.SCHEME_VERSION_MISMATCH: (
        401,
        "Authentication token is no longer supported, please sign in again",
        "رمز المصادقة لم يعد مدعوماً، يرجى تسجيل الدخول مرة أخرى",
    ),
    AuthErrorKind.DEVICE_BINDING_MISMATCH: (
        401,
        "Invalid device fingerprint",
        "بصمة الجهاز غير صالحة",
    ),
    AuthErrorKind.SESSION_INACTIVE: (
        401,
        "Invalid session binding",
        "ارتباط الجلسة غير صالح",
    ),
    AuthErrorKind.INVALID_CREDENTIALS: (
        401,
        "Invalid Pi Network credentials",
        "بيانات اعتماد شبكة Pi غير صالحة",
    ),
    AuthErrorKind.RATE_LIMITED: (
        429,
        "Too many attempts, please try again later",
        "محاولات كثيرة جداً، يرجى المحاولة لاحقاً",
    ),
    AuthErrorKind.COMPLIANCE_DENIED: (
        403,
        "Access denied",
        "تم رفض الوصول",
    ),
    AuthErrorKind.DEPENDENCY_UNAVAILABLE: (
        503,
        "Service temporarily unavailable, please retry",
        "الخدمة غير متاحة مؤقتاً، يرجى المحاولة لاحقاً",
    ),
}

_COMPLIANCE_MESSAGES: Dict[str, Tuple[str, str]] = {
    REASON_KYC_REQUIRED: ("Identity verification required", "مطلوب التحقق من الهوية"),
    REASON_OUTSIDE_REGION: (
        "Access is restricted to locations in Egypt",
        "الوصول مقصور على المواقع المصرية فقط",
    ),
    REASON_LOCATION_REQUIRED: ("Location is required to sign in", "الموقع مطلوب لتسجيل الدخول"),
}

SYSTEM_ERROR_MESSAGE = ("internal server error", "حدث خطأ في النظام")

_STATUS_MESSAGES_AR = {
    500: SYSTEM_ERROR_MESSAGE[1],
    503: _KIND_RESPONSES[AuthErrorKind.DEPENDENCY_UNAVAILABLE][2],
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    message_ar: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build an error envelope response."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, message_ar=message_ar, details=details)
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def describe_auth_error(error: AuthError) -> Tuple[int, str, str]:
    """HTTP status and bilingual message for an auth outcome."""
    status_code, message, message_ar = _KIND_RESPONSES[error.kind]
    if error.kind is AuthErrorKind.COMPLIANCE_DENIED and error.reason in _COMPLIANCE_MESSAGES:
        message, message_ar = _COMPLIANCE_MESSAGES[error.reason]
    return status_code, message, message_ar


def auth_error_response(error: AuthError) -> JSONResponse:
    status_code, message, message_ar = describe_auth_error(error)
    details: dict = {}
    headers: Dict[str, str] = {}
    if error.reason:
        details["reason"] = error.reason
    if error.kind in (AuthErrorKind.RATE_LIMITED, AuthErrorKind.DEPENDENCY_UNAVAILABLE):
        retry_after = max(1, int(error.retry_after or 1))
        details["retry_after"] = retry_after
        headers["Retry-After"] = str(retry_after)
    if status_code == 401:
        headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
    details["retryable"] = error.retryable
    return _error_response(
        status_code,
        message,
        details,
        code=error.kind.value,
        message_ar=message_ar,
        headers=headers or None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent envelope handlers for auth, service and framework errors."""

    @app.exception_handler(AuthFailure)
    async def handle_auth_failure(request: Request, exc: AuthFailure):
        log_fn = logger.error if exc.error.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE else logger.info
        log_fn(
            "auth_failure",
            path=request.url.path,
            method=request.method,
            kind=exc.error.kind.value,
            reason=exc.error.reason,
        )
        return auth_error_response(exc.error)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = {"Retry-After": "1"} if exc.status_code == 503 else None
        return _error_response(
            exc.status_code,
            sanitize_error_message(exc.message),
            exc.detail,
            code=exc.error_code,
            message_ar=_STATUS_MESSAGES_AR.get(exc.status_code),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        message, message_ar = SYSTEM_ERROR_MESSAGE
        return _error_response(500, message, code="server_error", message_ar=message_ar)
