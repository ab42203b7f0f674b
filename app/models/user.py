from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.db.types import UTCDateTime


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        UniqueConstraint("tenant_id", "phone", name="uq_users_tenant_phone"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), index=True)
    email = Column(String(255), index=True, nullable=True)
    phone = Column(String(20), index=True, nullable=True)  # E.164
    # OTP-only users have no password
    password = Column(String(150), nullable=True)
    status = Column(String(20), nullable=False, default=UserStatus.ACTIVE.value)
    email_verified_at = Column(UTCDateTime, nullable=True)
    phone_verified_at = Column(UTCDateTime, nullable=True)
    last_login_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Two-factor authentication
    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    two_factor_secret = Column(String(255), nullable=True)   # Fernet-encrypted base32 TOTP secret
    totp_verified_at = Column(UTCDateTime, nullable=True)    # null while setup is pending

    # Lockout bookkeeping
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(UTCDateTime, nullable=True)

    token_version = Column(Integer, default=1, nullable=False)  # invalidate old JWTs

    tenant = relationship("Tenant", back_populates="users")
    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")
    backup_codes = relationship("BackupCode", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    @property
    def is_email_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def has_password(self) -> bool:
        return bool(self.password)

    @property
    def is_two_factor_enabled(self) -> bool:
        # Enabled only once the pending secret has been confirmed with a code
        return bool(self.two_factor_enabled and self.two_factor_secret and self.totp_verified_at is not None)

    def is_locked(self, now: datetime = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.locked_until is not None and self.locked_until > now

    def __repr__(self):
        return f"<User(id={self.id}, tenant_id={self.tenant_id}, email='{self.email}')>"
