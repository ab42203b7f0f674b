"""
    Authentication Endpoints
    HTTP surface of the authentication core: password login with optional TOTP
    second factor, passwordless OTP login over SMS or email, refresh-token
    rotation and the two-factor lifecycle.
    Endpoints:
    - /login: Password login. Returns a token pair, or a partial token when 2FA is enabled.
    - /2fa/validate: Redeems a partial token plus a TOTP or backup code for a token pair.
    - /refresh: Rotates a refresh token into a new pair.
    - /logout: Revokes the presented refresh token only.
    - /logout-all: Revokes every session of the caller and invalidates outstanding access tokens.
    - /me: Returns the authenticated user.
    - /verify-email/request, /verify-email: Email address verification by emailed token.
    - /forgot-password, /reset-password: Password reset by emailed token; unlocks the account and revokes every session.
    - /otp/request, /otp/resend, /otp/verify: Passwordless login.
    - /2fa/setup, /2fa/verify, /2fa/disable, /2fa/regenerate-backup, /2fa/status: TOTP lifecycle.
    Security Features:
    - Per-IP throttling on top of account lockout and per-identifier OTP limits.
    - Uniform error responses to avoid leaking tenant, account or identifier existence.
    - Single-use partial tokens and rotate-on-use refresh tokens.
    - Token versioning to invalidate old access tokens on logout-all and password reset.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.dependencies import (
    client_ip,
    get_auth_service,
    get_counter_store,
    get_current_user,
    get_otp_service,
    get_totp_service,
)
from app.models.user import User
from app.schemas.auth import (
    AuthResponse,
    BackupCodesOut,
    EmailRequestIn,
    LoginRequest,
    LoginResponse,
    LogoutAllOut,
    LogoutRequest,
    MessageOut,
    OTPRequestIn,
    OTPRequestOut,
    OTPVerifyIn,
    RefreshRequest,
    ResetPasswordIn,
    TokenIn,
    TokenPairOut,
    TwoFACodeIn,
    TwoFADisableIn,
    TwoFASetupOut,
    TwoFAStatusOut,
    TwoFactorValidateRequest,
    UserOut,
)
from app.services.auth_service import AuthService
from app.services.otp_service import OTPService
from app.services.rate_limiter import CounterStore
from app.services.token_service import TokenPair
from app.services.totp_service import TOTPService

router = APIRouter()


async def throttle(counters: CounterStore, prefix: str, *parts, max_attempts: int, window_sec: int):
    if not await counters.allow(prefix, *parts, max_attempts=max_attempts, window_sec=window_sec):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": str(window_sec)},
        )


def pair_out(pair: TokenPair) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "token_type": pair.token_type,
        "expires_in": pair.expires_in,
        "expires_at": pair.expires_at,
    }


# ==================== Password login ====================

@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
async def login(
    payload: LoginRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    counters: CounterStore = Depends(get_counter_store),
):
    """
    Email + password login within a tenant.

    With 2FA enabled the response carries `requires_two_factor` and a
    `partial_token` instead of a token pair.
    """
    ip = client_ip(request)
    await throttle(counters, "login", payload.email.lower(), ip, max_attempts=20, window_sec=900)

    result = await auth.login(
        payload.email, payload.password, payload.tenant_id,
        ip_address=ip, user_agent=request.headers.get("user-agent"),
    )
    body = {"user": UserOut.model_validate(result.user), "requires_two_factor": result.requires_two_factor}
    if result.requires_two_factor:
        body["partial_token"] = result.partial_token
    else:
        body.update(pair_out(result.token_pair))
    return body


@router.post("/2fa/validate", response_model=AuthResponse)
async def two_factor_validate(
    payload: TwoFactorValidateRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    counters: CounterStore = Depends(get_counter_store),
):
    ip = client_ip(request)
    await throttle(counters, "2fa:validate", ip, max_attempts=20, window_sec=300)

    pair, user = await auth.validate_two_factor_login(
        payload.partial_token, payload.code,
        ip_address=ip, user_agent=request.headers.get("user-agent"),
    )
    return {**pair_out(pair), "user": UserOut.model_validate(user)}


# ==================== Session ====================

@router.post("/refresh", response_model=TokenPairOut)
async def refresh(payload: RefreshRequest, request: Request, auth: AuthService = Depends(get_auth_service)):
    pair = await auth.refresh(
        payload.refresh_token,
        ip_address=client_ip(request), user_agent=request.headers.get("user-agent"),
    )
    return pair_out(pair)


@router.post("/logout", response_model=MessageOut)
async def logout(payload: LogoutRequest, request: Request, auth: AuthService = Depends(get_auth_service)):
    # Same answer whether or not the token was known
    await auth.logout(
        payload.refresh_token,
        ip_address=client_ip(request), user_agent=request.headers.get("user-agent"),
    )
    return {"message": "Logout successful"}


@router.post("/logout-all", response_model=LogoutAllOut)
async def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    revoked = await auth.logout_all(
        current_user, ip_address=client_ip(request), user_agent=request.headers.get("user-agent"),
    )
    return {"message": "All sessions revoked", "revoked_sessions": revoked}


@router.get("/me", response_model=UserOut)
async def read_me(current_user: User = Depends(get_current_user)):
    return current_user


# ==================== Email verification and password reset ====================

ACCEPTED_MESSAGE = "If the account exists, an email has been sent"


@router.post("/verify-email/request", response_model=MessageOut, status_code=status.HTTP_202_ACCEPTED)
async def verify_email_request(
    payload: EmailRequestIn,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    counters: CounterStore = Depends(get_counter_store),
):
    ip = client_ip(request)
    await throttle(counters, "verify:start", payload.email.lower(), ip, max_attempts=5, window_sec=900)

    await auth.request_email_verification(payload.email, payload.tenant_id, ip_address=ip)
    return {"message": ACCEPTED_MESSAGE}


@router.post("/verify-email", response_model=MessageOut)
async def verify_email(
    payload: TokenIn,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    counters: CounterStore = Depends(get_counter_store),
):
    ip = client_ip(request)
    await throttle(counters, "verify:confirm", ip, max_attempts=20, window_sec=900)

    await auth.verify_email(payload.token, ip_address=ip, user_agent=request.headers.get("user-agent"))
    return {"message": "Email verified"}


@router.post("/forgot-password", response_model=MessageOut, status_code=status.HTTP_202_ACCEPTED)
async def forgot_password(
    payload: EmailRequestIn,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    counters: CounterStore = Depends(get_counter_store),
):
    """Always answers 202 with the same body, whether or not the account exists"""
    ip = client_ip(request)
    await throttle(counters, "fp:start", payload.email.lower(), ip, max_attempts=5, window_sec=900)

    await auth.request_password_reset(payload.email, payload.tenant_id, ip_address=ip)
    return {"message": ACCEPTED_MESSAGE}


@router.post("/reset-password", response_model=MessageOut)
async def reset_password(
    payload: ResetPasswordIn,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    counters: CounterStore = Depends(get_counter_store),
):
    ip = client_ip(request)
    await throttle(counters, "fp:confirm", ip, max_attempts=20, window_sec=900)

    await auth.reset_password(
        payload.token, payload.new_password, ip_address=ip, user_agent=request.headers.get("user-agent"),
    )
    return {"message": "Password updated, please log in again"}


# ==================== Passwordless OTP ====================

@router.post("/otp/request", response_model=OTPRequestOut)
async def otp_request(
    payload: OTPRequestIn,
    request: Request,
    otp: OTPService = Depends(get_otp_service),
    counters: CounterStore = Depends(get_counter_store),
):
    ip = client_ip(request)
    await throttle(counters, "otp:send", ip, max_attempts=30, window_sec=3600)

    result = await otp.request_otp(payload.identifier, payload.channel, payload.tenant_id, ip_address=ip)
    return result.__dict__


@router.post("/otp/resend", response_model=OTPRequestOut)
async def otp_resend(
    payload: OTPRequestIn,
    request: Request,
    otp: OTPService = Depends(get_otp_service),
    counters: CounterStore = Depends(get_counter_store),
):
    ip = client_ip(request)
    await throttle(counters, "otp:send", ip, max_attempts=30, window_sec=3600)

    result = await otp.resend_otp(payload.identifier, payload.channel, payload.tenant_id, ip_address=ip)
    return result.__dict__


@router.post("/otp/verify", response_model=AuthResponse)
async def otp_verify(
    payload: OTPVerifyIn,
    request: Request,
    otp: OTPService = Depends(get_otp_service),
    counters: CounterStore = Depends(get_counter_store),
):
    ip = client_ip(request)
    await throttle(counters, "otp:verify", ip, max_attempts=30, window_sec=900)

    pair, user = await otp.verify_otp(
        payload.identifier, payload.code, payload.tenant_id,
        ip_address=ip, user_agent=request.headers.get("user-agent"),
    )
    return {**pair_out(pair), "user": UserOut.model_validate(user)}


# ==================== TOTP lifecycle ====================

@router.post("/2fa/setup", response_model=TwoFASetupOut)
async def twofa_setup(current_user: User = Depends(get_current_user), totp: TOTPService = Depends(get_totp_service)):
    """
    Start (or restart) 2FA setup for the authenticated user.

    Returns:
    - secret / manual_entry: key for manual entry in an authenticator app
    - otpauth_url: provisioning URI
    - qr_code: PNG data URL of the provisioning URI
    """
    setup = await totp.setup(current_user)
    return setup.__dict__


@router.post("/2fa/verify", response_model=BackupCodesOut)
async def twofa_verify(
    payload: TwoFACodeIn,
    request: Request,
    current_user: User = Depends(get_current_user),
    totp: TOTPService = Depends(get_totp_service),
):
    codes = await totp.verify_and_enable(current_user, payload.code, ip_address=client_ip(request))
    return {"message": "Two-factor authentication enabled. Store these backup codes safely.", "backup_codes": codes}


@router.post("/2fa/disable", response_model=MessageOut)
async def twofa_disable(
    payload: TwoFADisableIn,
    request: Request,
    current_user: User = Depends(get_current_user),
    totp: TOTPService = Depends(get_totp_service),
):
    await totp.disable(current_user, payload.password, ip_address=client_ip(request))
    return {"message": "Two-factor authentication disabled"}


@router.post("/2fa/regenerate-backup", response_model=BackupCodesOut)
async def twofa_regenerate_backup(
    payload: TwoFACodeIn,
    request: Request,
    current_user: User = Depends(get_current_user),
    totp: TOTPService = Depends(get_totp_service),
):
    codes = await totp.regenerate_backup_codes(current_user, payload.code, ip_address=client_ip(request))
    return {"message": "Backup codes regenerated. Previous codes no longer work.", "backup_codes": codes}


@router.get("/2fa/status", response_model=TwoFAStatusOut)
async def twofa_status(current_user: User = Depends(get_current_user), totp: TOTPService = Depends(get_totp_service)):
    status_ = await totp.status(current_user)
    return status_.__dict__
