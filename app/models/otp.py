from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, ForeignKey, Integer, String

from app.db.base import Base
from app.db.types import UTCDateTime


class OTPPurpose(str, Enum):
    LOGIN = "login"
    VERIFY = "verify"


class OTPChannel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class OTPCode(Base):
    """
    One-time code for passwordless login.

    Lifecycle: created on request, consumed (used_at set) on the first
    successful verify, superseded by a newer record on resend. Rows are
    never updated back to a redeemable state.
    """
    __tablename__ = "otp_codes"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    identifier = Column(String(255), nullable=False, index=True)
    purpose = Column(String(20), nullable=False, default=OTPPurpose.LOGIN.value)
    channel = Column(String(10), nullable=False)
    code_hash = Column(String(64), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), index=True)

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    def __repr__(self):
        return f"<OTPCode(id={self.id}, channel='{self.channel}', attempts={self.attempts}, used={self.is_used})>"
