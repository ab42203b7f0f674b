"""
Unit tests for Pydantic schemas validation.

Tests schema validation without database.
"""

import pytest
from pydantic import ValidationError

from app.schemas.auth import (
    LoginRequest,
    LoginResponse,
    OTPRequestIn,
    OTPVerifyIn,
    TwoFACodeIn,
    TwoFactorValidateRequest,
    UserOut,
)


class TestLoginSchemas:
    """Test password login schemas."""

    def test_login_valid(self):
        """Test creating valid LoginRequest schema."""
        login = LoginRequest(email="u1@school.edu", password="P@ssw0rd1", tenant_id=1)

        assert login.email == "u1@school.edu"
        assert login.tenant_id == 1

    def test_login_invalid_email(self):
        """Test that invalid email raises ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            LoginRequest(email="not-an-email", password="P@ssw0rd1", tenant_id=1)

        errors = exc_info.value.errors()
        assert any("email" in str(error).lower() for error in errors)

    def test_login_requires_tenant(self):
        """Logins are always scoped to a tenant."""
        with pytest.raises(ValidationError):
            LoginRequest(email="u1@school.edu", password="P@ssw0rd1")

    def test_login_empty_password(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="u1@school.edu", password="", tenant_id=1)

    def test_partial_response_omits_token_pair(self):
        """A 2FA-pending response dumps without token pair fields."""
        user = UserOut(id=1, tenant_id=1, email="u1@school.edu", status="active")
        response = LoginResponse(user=user, requires_two_factor=True, partial_token="abc")

        dumped = response.model_dump(exclude_none=True)
        assert dumped["requires_two_factor"] is True
        assert "access_token" not in dumped
        assert "refresh_token" not in dumped


class TestTwoFactorSchemas:
    """Test 2FA request schemas."""

    def test_validate_accepts_backup_code_length(self):
        body = TwoFactorValidateRequest(partial_token="tok", code="ABCD1234")

        assert body.code == "ABCD1234"

    def test_code_too_short(self):
        with pytest.raises(ValidationError):
            TwoFACodeIn(code="123")


class TestOTPSchemas:
    """Test passwordless OTP schemas."""

    def test_request_keeps_channel_as_text(self):
        """Channel is validated by the OTP engine, not by the schema."""
        body = OTPRequestIn(identifier="+15555550123", channel="fax", tenant_id=1)

        assert body.channel == "fax"

    def test_verify_requires_code(self):
        with pytest.raises(ValidationError):
            OTPVerifyIn(identifier="+15555550123", tenant_id=1)
