"""
Error taxonomy for the authentication core.

Services raise AuthError tagged with an ErrorCode. Each code belongs to an
ErrorCategory; the HTTP layer (app.api.errors) is the only place that knows
how a code is presented to a client.
"""

from enum import Enum
from typing import Dict, Optional


class ErrorCategory(str, Enum):
    """Broad families of failures"""
    CLIENT_INPUT = "client_input"        # malformed input, rejected before storage
    AUTHENTICATION = "authentication"    # bad password/code/token
    RATE_LIMIT = "rate_limit"            # lockout, cooldown, caps
    CONFLICT = "conflict"                # invalid state transition
    INTERNAL = "internal"                # delivery/storage failures


class ErrorCode(str, Enum):
    """Every failure the authentication core can report"""
    # Login
    INVALID_CREDENTIALS = "invalid_credentials"
    TENANT_NOT_FOUND = "tenant_not_found"
    TENANT_INACTIVE = "tenant_inactive"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    ACCOUNT_LOCKED = "account_locked"
    USER_NOT_FOUND = "user_not_found"
    WEAK_PASSWORD = "weak_password"

    # Tokens
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    REFRESH_TOKEN_NOT_FOUND = "refresh_token_not_found"
    REFRESH_TOKEN_REVOKED = "refresh_token_revoked"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"

    # TOTP
    TOTP_NOT_SETUP = "totp_not_setup"
    TOTP_NOT_ENABLED = "totp_not_enabled"
    TOTP_ALREADY_ENABLED = "totp_already_enabled"
    TOTP_INVALID_CODE = "totp_invalid_code"
    TOTP_RATE_LIMIT_EXCEEDED = "totp_rate_limit_exceeded"

    # OTP
    INVALID_IDENTIFIER = "invalid_identifier"
    INVALID_OTP_CHANNEL = "invalid_otp_channel"
    IDENTIFIER_NOT_FOUND = "identifier_not_found"
    OTP_EXPIRED = "otp_expired"
    OTP_INVALID = "otp_invalid"
    OTP_ALREADY_USED = "otp_already_used"
    OTP_MAX_ATTEMPTS = "otp_max_attempts"
    OTP_RATE_LIMITED = "otp_rate_limited"
    OTP_COOLDOWN = "otp_cooldown"

    # Email verification and password reset
    VERIFICATION_TOKEN_NOT_FOUND = "verification_token_not_found"
    VERIFICATION_TOKEN_USED = "verification_token_used"
    VERIFICATION_TOKEN_EXPIRED = "verification_token_expired"

    # Delivery
    SMS_SEND_FAILED = "sms_send_failed"
    EMAIL_SEND_FAILED = "email_send_failed"


ERROR_CATEGORIES: Dict[ErrorCode, ErrorCategory] = {
    ErrorCode.INVALID_CREDENTIALS: ErrorCategory.AUTHENTICATION,
    ErrorCode.TENANT_NOT_FOUND: ErrorCategory.AUTHENTICATION,
    ErrorCode.TENANT_INACTIVE: ErrorCategory.AUTHENTICATION,
    ErrorCode.ACCOUNT_INACTIVE: ErrorCategory.AUTHENTICATION,
    ErrorCode.EMAIL_NOT_VERIFIED: ErrorCategory.AUTHENTICATION,
    ErrorCode.ACCOUNT_LOCKED: ErrorCategory.RATE_LIMIT,
    ErrorCode.USER_NOT_FOUND: ErrorCategory.AUTHENTICATION,
    ErrorCode.WEAK_PASSWORD: ErrorCategory.CLIENT_INPUT,
    ErrorCode.INVALID_TOKEN: ErrorCategory.AUTHENTICATION,
    ErrorCode.EXPIRED_TOKEN: ErrorCategory.AUTHENTICATION,
    ErrorCode.REFRESH_TOKEN_NOT_FOUND: ErrorCategory.AUTHENTICATION,
    ErrorCode.REFRESH_TOKEN_REVOKED: ErrorCategory.AUTHENTICATION,
    ErrorCode.REFRESH_TOKEN_EXPIRED: ErrorCategory.AUTHENTICATION,
    ErrorCode.TOTP_NOT_SETUP: ErrorCategory.CONFLICT,
    ErrorCode.TOTP_NOT_ENABLED: ErrorCategory.CONFLICT,
    ErrorCode.TOTP_ALREADY_ENABLED: ErrorCategory.CONFLICT,
    ErrorCode.TOTP_INVALID_CODE: ErrorCategory.AUTHENTICATION,
    ErrorCode.TOTP_RATE_LIMIT_EXCEEDED: ErrorCategory.RATE_LIMIT,
    ErrorCode.INVALID_IDENTIFIER: ErrorCategory.CLIENT_INPUT,
    ErrorCode.INVALID_OTP_CHANNEL: ErrorCategory.CLIENT_INPUT,
    ErrorCode.IDENTIFIER_NOT_FOUND: ErrorCategory.AUTHENTICATION,
    ErrorCode.OTP_EXPIRED: ErrorCategory.AUTHENTICATION,
    ErrorCode.OTP_INVALID: ErrorCategory.AUTHENTICATION,
    ErrorCode.OTP_ALREADY_USED: ErrorCategory.CONFLICT,
    ErrorCode.OTP_MAX_ATTEMPTS: ErrorCategory.RATE_LIMIT,
    ErrorCode.OTP_RATE_LIMITED: ErrorCategory.RATE_LIMIT,
    ErrorCode.OTP_COOLDOWN: ErrorCategory.RATE_LIMIT,
    ErrorCode.VERIFICATION_TOKEN_NOT_FOUND: ErrorCategory.CLIENT_INPUT,
    ErrorCode.VERIFICATION_TOKEN_USED: ErrorCategory.CLIENT_INPUT,
    ErrorCode.VERIFICATION_TOKEN_EXPIRED: ErrorCategory.CLIENT_INPUT,
    ErrorCode.SMS_SEND_FAILED: ErrorCategory.INTERNAL,
    ErrorCode.EMAIL_SEND_FAILED: ErrorCategory.INTERNAL,
}


class AuthError(Exception):
    """
    Raised by the authentication services.

    Args:
        code: Machine-readable failure code
        message: Internal description (logged, never shown to clients)
        retry_after: Seconds until the action may be retried (rate-limit failures)
    """

    def __init__(self, code: ErrorCode, message: Optional[str] = None, retry_after: Optional[int] = None):
        self.code = code
        self.message = message or code.value
        self.retry_after = retry_after
        super().__init__(self.message)

    @property
    def category(self) -> ErrorCategory:
        return ERROR_CATEGORIES[self.code]

    def __repr__(self):
        return f"<AuthError(code='{self.code.value}', retry_after={self.retry_after})>"
