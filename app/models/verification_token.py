from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.db.types import UTCDateTime


class VerificationTokenType(str, Enum):
    EMAIL_VERIFY = "email_verify"
    PASSWORD_RESET = "password_reset"


class VerificationToken(Base):
    """
    Single-use token sent by email to verify an address or reset a password.

    Only the SHA-256 of the token is stored. A newer token of the same type
    expires the older unused ones.
    """
    __tablename__ = "verification_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    type = Column(String(20), nullable=False, index=True)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    user = relationship("User")

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    def __repr__(self):
        return f"<VerificationToken(id={self.id}, type='{self.type}', used={self.is_used})>"
