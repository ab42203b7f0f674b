from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Integer, String, Text

from app.db.base import Base
from app.db.types import UTCDateTime


class LoginFailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    TENANT_NOT_FOUND = "tenant_not_found"
    TENANT_INACTIVE = "tenant_inactive"
    USER_NOT_FOUND = "user_not_found"
    INVALID_SECOND_FACTOR = "invalid_second_factor"


class LoginAttempt(Base):
    """Ledger of login attempts (password, OTP and 2FA) for security monitoring"""
    __tablename__ = "login_attempts"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    identifier = Column(String(255), nullable=True, index=True)  # email or phone
    ip_address = Column(String(45), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, default=False, nullable=False)
    failure_reason = Column(String(50), nullable=True)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), index=True)

    def __repr__(self):
        return f"<LoginAttempt(id={self.id}, user_id={self.user_id}, success={self.success})>"
