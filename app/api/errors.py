"""
Translation of AuthError into HTTP responses.

ERROR_RESPONSES is the only place that knows how a failure code is shown to
clients. Services stay free of transport concerns.
"""

from typing import Dict, Tuple

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.core.errors import AuthError, ErrorCategory, ErrorCode
from app.core.logging import capture_error
from app.logging import get_logger

logger = get_logger("api.errors")

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
INVALID_TOKEN_MESSAGE = "Invalid or expired token"
GENERIC_ERROR_MESSAGE = "Internal server error"

# code -> (status, public message, public code)
# Lookup failures are reported as invalid credentials so callers cannot
# enumerate tenants, accounts or OTP identifiers.
ERROR_RESPONSES: Dict[ErrorCode, Tuple[int, str, ErrorCode]] = {
    # Login
    ErrorCode.INVALID_CREDENTIALS: (status.HTTP_401_UNAUTHORIZED, INVALID_CREDENTIALS_MESSAGE, ErrorCode.INVALID_CREDENTIALS),
    ErrorCode.TENANT_NOT_FOUND: (status.HTTP_401_UNAUTHORIZED, INVALID_CREDENTIALS_MESSAGE, ErrorCode.INVALID_CREDENTIALS),
    ErrorCode.USER_NOT_FOUND: (status.HTTP_401_UNAUTHORIZED, INVALID_CREDENTIALS_MESSAGE, ErrorCode.INVALID_CREDENTIALS),
    ErrorCode.TENANT_INACTIVE: (status.HTTP_401_UNAUTHORIZED, "Organization is not active", ErrorCode.TENANT_INACTIVE),
    ErrorCode.ACCOUNT_INACTIVE: (status.HTTP_401_UNAUTHORIZED, "Account is not active", ErrorCode.ACCOUNT_INACTIVE),
    ErrorCode.EMAIL_NOT_VERIFIED: (status.HTTP_401_UNAUTHORIZED, "Email address is not verified", ErrorCode.EMAIL_NOT_VERIFIED),
    ErrorCode.ACCOUNT_LOCKED: (status.HTTP_423_LOCKED, "Account is temporarily locked", ErrorCode.ACCOUNT_LOCKED),
    ErrorCode.WEAK_PASSWORD: (status.HTTP_400_BAD_REQUEST, "Password does not meet the requirements", ErrorCode.WEAK_PASSWORD),

    # Tokens
    ErrorCode.INVALID_TOKEN: (status.HTTP_401_UNAUTHORIZED, INVALID_TOKEN_MESSAGE, ErrorCode.INVALID_TOKEN),
    ErrorCode.EXPIRED_TOKEN: (status.HTTP_401_UNAUTHORIZED, INVALID_TOKEN_MESSAGE, ErrorCode.EXPIRED_TOKEN),
    ErrorCode.REFRESH_TOKEN_NOT_FOUND: (status.HTTP_401_UNAUTHORIZED, "Please log in again", ErrorCode.REFRESH_TOKEN_NOT_FOUND),
    ErrorCode.REFRESH_TOKEN_REVOKED: (status.HTTP_401_UNAUTHORIZED, "Please log in again", ErrorCode.REFRESH_TOKEN_REVOKED),
    ErrorCode.REFRESH_TOKEN_EXPIRED: (status.HTTP_401_UNAUTHORIZED, "Please log in again", ErrorCode.REFRESH_TOKEN_EXPIRED),

    # TOTP
    ErrorCode.TOTP_NOT_SETUP: (status.HTTP_409_CONFLICT, "Two-factor authentication has not been set up", ErrorCode.TOTP_NOT_SETUP),
    ErrorCode.TOTP_NOT_ENABLED: (status.HTTP_409_CONFLICT, "Two-factor authentication is not enabled", ErrorCode.TOTP_NOT_ENABLED),
    ErrorCode.TOTP_ALREADY_ENABLED: (status.HTTP_409_CONFLICT, "Two-factor authentication is already enabled", ErrorCode.TOTP_ALREADY_ENABLED),
    ErrorCode.TOTP_INVALID_CODE: (status.HTTP_401_UNAUTHORIZED, "Invalid verification code", ErrorCode.TOTP_INVALID_CODE),
    ErrorCode.TOTP_RATE_LIMIT_EXCEEDED: (status.HTTP_429_TOO_MANY_REQUESTS, "Too many attempts, try again later", ErrorCode.TOTP_RATE_LIMIT_EXCEEDED),

    # OTP
    ErrorCode.INVALID_IDENTIFIER: (status.HTTP_400_BAD_REQUEST, "Invalid phone number or email", ErrorCode.INVALID_IDENTIFIER),
    ErrorCode.INVALID_OTP_CHANNEL: (status.HTTP_400_BAD_REQUEST, "Channel must be 'sms' or 'email'", ErrorCode.INVALID_OTP_CHANNEL),
    ErrorCode.IDENTIFIER_NOT_FOUND: (status.HTTP_401_UNAUTHORIZED, INVALID_CREDENTIALS_MESSAGE, ErrorCode.INVALID_CREDENTIALS),
    ErrorCode.OTP_EXPIRED: (status.HTTP_401_UNAUTHORIZED, "Code has expired, request a new one", ErrorCode.OTP_EXPIRED),
    ErrorCode.OTP_INVALID: (status.HTTP_401_UNAUTHORIZED, "Invalid code", ErrorCode.OTP_INVALID),
    ErrorCode.OTP_ALREADY_USED: (status.HTTP_409_CONFLICT, "Code has already been used", ErrorCode.OTP_ALREADY_USED),
    ErrorCode.OTP_MAX_ATTEMPTS: (status.HTTP_429_TOO_MANY_REQUESTS, "Too many attempts, request a new code", ErrorCode.OTP_MAX_ATTEMPTS),
    ErrorCode.OTP_RATE_LIMITED: (status.HTTP_429_TOO_MANY_REQUESTS, "Too many code requests, try again later", ErrorCode.OTP_RATE_LIMITED),
    ErrorCode.OTP_COOLDOWN: (status.HTTP_429_TOO_MANY_REQUESTS, "Please wait before requesting another code", ErrorCode.OTP_COOLDOWN),

    # Email verification and password reset
    ErrorCode.VERIFICATION_TOKEN_NOT_FOUND: (status.HTTP_400_BAD_REQUEST, "Invalid or expired link", ErrorCode.VERIFICATION_TOKEN_NOT_FOUND),
    ErrorCode.VERIFICATION_TOKEN_USED: (status.HTTP_400_BAD_REQUEST, "This link has already been used", ErrorCode.VERIFICATION_TOKEN_USED),
    ErrorCode.VERIFICATION_TOKEN_EXPIRED: (status.HTTP_400_BAD_REQUEST, "Invalid or expired link", ErrorCode.VERIFICATION_TOKEN_EXPIRED),

    # Delivery
    ErrorCode.SMS_SEND_FAILED: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Could not send the code, try again later", ErrorCode.SMS_SEND_FAILED),
    ErrorCode.EMAIL_SEND_FAILED: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Could not send the code, try again later", ErrorCode.EMAIL_SEND_FAILED),
}


def to_response(error: AuthError) -> JSONResponse:
    status_code, detail, public_code = ERROR_RESPONSES.get(
        error.code, (status.HTTP_500_INTERNAL_SERVER_ERROR, GENERIC_ERROR_MESSAGE, error.code)
    )
    body = {"detail": detail, "code": public_code.value}
    headers = {}
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    if error.category == ErrorCategory.RATE_LIMIT and error.retry_after:
        body["retry_after"] = error.retry_after
        headers["Retry-After"] = str(error.retry_after)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    if exc.category == ErrorCategory.INTERNAL:
        logger.error(
            f"Internal auth failure: {exc.message}",
            exc_info=False,
            code=exc.code.value,
            path=request.url.path,
        )
        capture_error(exc, context={"auth": {"code": exc.code.value, "path": request.url.path}})
    return to_response(exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
