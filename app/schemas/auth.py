"""
Pydantic schemas for the authentication endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


# ==================== Users & tokens ====================

class UserOut(BaseModel):
    """Public view of an authenticated user"""
    id: int
    tenant_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str
    two_factor_enabled: bool = False
    email_verified_at: Optional[datetime] = None
    phone_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TokenPairOut(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime


class AuthResponse(TokenPairOut):
    """Token pair plus the user it was issued to"""
    user: UserOut


# ==================== Password login ====================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    tenant_id: int


class LoginResponse(BaseModel):
    """
    Either a full token pair or, when 2FA is enabled, a partial token.

    Fields that do not apply to the branch taken are omitted.
    """
    user: UserOut
    requires_two_factor: bool = False
    partial_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None


class TwoFactorValidateRequest(BaseModel):
    partial_token: str = Field(..., min_length=1)
    code: str = Field(..., min_length=6, max_length=20)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class MessageOut(BaseModel):
    message: str


class LogoutAllOut(MessageOut):
    revoked_sessions: int


# ==================== Email verification and password reset ====================

class EmailRequestIn(BaseModel):
    email: EmailStr
    tenant_id: int


class TokenIn(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)


class ResetPasswordIn(TokenIn):
    # Strength rules are applied by the service so the token survives a rejected password
    new_password: str = Field(..., min_length=1, max_length=256)


# ==================== Passwordless OTP ====================

class OTPRequestIn(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=255, description="E.164 phone or email")
    channel: str = Field(..., description="'sms' or 'email'")
    tenant_id: int


class OTPRequestOut(BaseModel):
    message: str
    expires_in: int
    masked_identifier: str


class OTPVerifyIn(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=255)
    code: str = Field(..., min_length=4, max_length=10)
    tenant_id: int


# ==================== TOTP lifecycle ====================

class TwoFASetupOut(BaseModel):
    secret: str
    otpauth_url: str
    manual_entry: str
    qr_code: str


class TwoFACodeIn(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class TwoFADisableIn(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class BackupCodesOut(BaseModel):
    message: str
    backup_codes: List[str]


class TwoFAStatusOut(BaseModel):
    enabled: bool
    pending_setup: bool
    backup_codes_remaining: int
