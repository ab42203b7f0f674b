"""
OTP Engine (passwordless login).

A numeric code is sent over SMS or email and redeemed once for a token pair.
There is no partial-token step: the code is the factor.

Cooldown and hourly cap live in the shared counter store and are keyed by
tenant and identifier only, so request and resend draw from the same budget.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthError, ErrorCode
from app.core.security import generate_otp, hash_otp, utcnow, verify_otp
from app.logging import get_logger, mask_identifier
from app.models.audit_log import AuditAction
from app.models.login_attempt import LoginFailureReason
from app.models.otp import OTPChannel, OTPCode, OTPPurpose
from app.models.user import User
from app.services.audit import AuditService
from app.services.delivery import Delivery, DeliveryError
from app.services.rate_limiter import CounterStore
from app.services.token_service import TokenPair, TokenService

logger = get_logger("auth.otp")

PHONE_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")

HOURLY_WINDOW_SECONDS = 3600


@dataclass
class OTPRequestResult:
    message: str
    expires_in: int
    masked_identifier: str


def detect_channel(identifier: str) -> OTPChannel:
    return OTPChannel.SMS if identifier.strip().startswith("+") else OTPChannel.EMAIL


def normalize_identifier(identifier: str, channel: OTPChannel) -> str:
    if channel == OTPChannel.SMS:
        return identifier.strip().replace(" ", "").replace("-", "")
    return identifier.strip().lower()


def validate_identifier(identifier: str, channel) -> Tuple[str, OTPChannel]:
    """
    Check the channel and the identifier format for that channel.

    Returns:
        (normalized identifier, channel)

    Raises:
        AuthError: INVALID_OTP_CHANNEL, INVALID_IDENTIFIER
    """
    try:
        channel = OTPChannel(channel)
    except ValueError:
        raise AuthError(ErrorCode.INVALID_OTP_CHANNEL)

    if not identifier:
        raise AuthError(ErrorCode.INVALID_IDENTIFIER)
    normalized = normalize_identifier(identifier, channel)
    pattern = PHONE_PATTERN if channel == OTPChannel.SMS else EMAIL_PATTERN
    if not pattern.match(normalized):
        raise AuthError(ErrorCode.INVALID_IDENTIFIER)
    return normalized, channel


class OTPService:
    def __init__(
        self,
        db: AsyncSession,
        counters: CounterStore,
        tokens: TokenService,
        delivery: Delivery,
        audit: AuditService,
        code_length: int = None,
        expire_seconds: int = None,
        max_attempts: int = None,
        cooldown_seconds: int = None,
        max_requests_per_hour: int = None,
    ):
        self.db = db
        self.counters = counters
        self.tokens = tokens
        self.delivery = delivery
        self.audit = audit
        self.code_length = code_length or settings.OTP_LENGTH
        self.expire_seconds = expire_seconds or settings.OTP_EXPIRE_SECONDS
        self.max_attempts = max_attempts or settings.OTP_MAX_ATTEMPTS
        # 0 disables the cooldown
        self.cooldown_seconds = settings.OTP_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self.max_requests_per_hour = max_requests_per_hour or settings.OTP_MAX_REQUESTS_PER_HOUR

    # ==================== Send ====================

    async def request_otp(
        self,
        identifier: str,
        channel: str,
        tenant_id: int,
        purpose: OTPPurpose = OTPPurpose.LOGIN,
        ip_address: Optional[str] = None,
    ) -> OTPRequestResult:
        """
        Generate, store (hashed) and dispatch a one-time code.

        Raises:
            AuthError: INVALID_OTP_CHANNEL, INVALID_IDENTIFIER, OTP_RATE_LIMITED,
                OTP_COOLDOWN, IDENTIFIER_NOT_FOUND, SMS_SEND_FAILED, EMAIL_SEND_FAILED
        """
        return await self._send(identifier, channel, tenant_id, purpose, ip_address, supersede=False)

    async def resend_otp(
        self,
        identifier: str,
        channel: str,
        tenant_id: int,
        purpose: OTPPurpose = OTPPurpose.LOGIN,
        ip_address: Optional[str] = None,
    ) -> OTPRequestResult:
        """Same as request_otp, but expires every earlier unused code first"""
        return await self._send(identifier, channel, tenant_id, purpose, ip_address, supersede=True)

    async def _send(self, identifier, channel, tenant_id, purpose, ip_address, supersede: bool) -> OTPRequestResult:
        identifier, channel = validate_identifier(identifier, channel)
        masked = mask_identifier(identifier)

        await self._enforce_send_limits(tenant_id, identifier)

        user = await self._find_user(identifier, channel, tenant_id)
        if user is None:
            logger.warning("OTP requested for unknown identifier", identifier=masked, tenant_id=tenant_id)
            raise AuthError(ErrorCode.IDENTIFIER_NOT_FOUND)
        if not user.is_active:
            logger.warning("OTP requested for inactive account", identifier=masked, user_id=user.id)
            raise AuthError(ErrorCode.IDENTIFIER_NOT_FOUND)

        now = utcnow()
        if supersede:
            await self.db.execute(
                update(OTPCode)
                .where(
                    OTPCode.tenant_id == tenant_id,
                    OTPCode.identifier == identifier,
                    OTPCode.used_at.is_(None),
                    OTPCode.expires_at > now,
                )
                .values(expires_at=now)
                .execution_options(synchronize_session=False)
            )

        code = generate_otp(self.code_length)
        record = OTPCode(
            tenant_id=tenant_id,
            user_id=user.id,
            identifier=identifier,
            purpose=OTPPurpose(purpose).value,
            channel=channel.value,
            code_hash=hash_otp(code),
            expires_at=now + timedelta(seconds=self.expire_seconds),
            created_at=now,
        )
        self.db.add(record)
        await self.db.commit()

        minutes = max(self.expire_seconds // 60, 1)
        message = f"Your {settings.APP_NAME} verification code is {code}. It expires in {minutes} minutes."
        try:
            await self.delivery.send(channel, identifier, message)
        except DeliveryError as e:
            # An undeliverable code must not stay redeemable
            record.expires_at = utcnow()
            await self.db.commit()
            logger.error(f"OTP dispatch failed: {e}", exc_info=False, channel=channel.value, identifier=masked)
            code_for_channel = ErrorCode.SMS_SEND_FAILED if channel == OTPChannel.SMS else ErrorCode.EMAIL_SEND_FAILED
            raise AuthError(code_for_channel, str(e))

        logger.info("OTP sent", channel=channel.value, identifier=masked, user_id=user.id)
        await self.audit.record(
            AuditAction.OTP_SENT, user=user, ip_address=ip_address, entity_type="otp",
            details={"channel": channel.value, "resend": supersede},
        )
        return OTPRequestResult(message="OTP sent", expires_in=self.expire_seconds, masked_identifier=masked)

    async def _enforce_send_limits(self, tenant_id: int, identifier: str) -> None:
        hourly_key = self.counters.key("otp", "hourly", tenant_id, identifier)
        if await self.counters.count(hourly_key) >= self.max_requests_per_hour:
            retry_after = await self.counters.retry_after(hourly_key, default=HOURLY_WINDOW_SECONDS)
            logger.security("OTP hourly cap reached", identifier=mask_identifier(identifier), tenant_id=tenant_id)
            raise AuthError(ErrorCode.OTP_RATE_LIMITED, retry_after=retry_after)

        if self.cooldown_seconds > 0:
            cooldown_key = self.counters.key("otp", "cooldown", tenant_id, identifier)
            if not await self.counters.claim(cooldown_key, self.cooldown_seconds):
                retry_after = await self.counters.retry_after(cooldown_key, default=self.cooldown_seconds)
                raise AuthError(ErrorCode.OTP_COOLDOWN, retry_after=retry_after)

        await self.counters.hit(hourly_key, HOURLY_WINDOW_SECONDS)

    async def _find_user(self, identifier: str, channel: OTPChannel, tenant_id: int) -> Optional[User]:
        column = User.phone if channel == OTPChannel.SMS else User.email
        result = await self.db.execute(
            select(User)
            .filter(User.tenant_id == tenant_id, column == identifier)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ==================== Verify ====================

    async def verify_otp(
        self,
        identifier: str,
        code: str,
        tenant_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[TokenPair, User]:
        """
        Redeem the latest code for an identifier and log the user in.

        A record allows at most one successful verification. Wrong codes
        count against it; once the cap is reached the record is dead even
        for the correct code.

        Raises:
            AuthError: INVALID_IDENTIFIER, OTP_EXPIRED, OTP_ALREADY_USED,
                OTP_MAX_ATTEMPTS, OTP_INVALID, IDENTIFIER_NOT_FOUND,
                ACCOUNT_LOCKED, ACCOUNT_INACTIVE
        """
        identifier, channel = validate_identifier(identifier, detect_channel(identifier or ""))
        masked = mask_identifier(identifier)

        result = await self.db.execute(
            select(OTPCode)
            .filter(
                OTPCode.tenant_id == tenant_id,
                OTPCode.identifier == identifier,
                OTPCode.purpose == OTPPurpose.LOGIN.value,
            )
            .order_by(OTPCode.created_at.desc(), OTPCode.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()

        now = utcnow()
        if record is None:
            raise AuthError(ErrorCode.OTP_EXPIRED, "no code issued for identifier")
        if record.is_used:
            raise AuthError(ErrorCode.OTP_ALREADY_USED)
        if record.is_expired(now):
            raise AuthError(ErrorCode.OTP_EXPIRED)
        if record.attempts >= self.max_attempts:
            raise AuthError(ErrorCode.OTP_MAX_ATTEMPTS)

        if not verify_otp(code, record.code_hash):
            attempts = (await self.db.execute(
                update(OTPCode)
                .where(self._redeemable(record.id, now))
                .values(attempts=OTPCode.attempts + 1)
                .returning(OTPCode.attempts)
                .execution_options(synchronize_session=False)
            )).scalar_one_or_none()
            await self.db.commit()
            if attempts is None:
                raise await self._dead_record_error(record.id)
            await self.audit.record_login_attempt(
                identifier, False, user=None, ip_address=ip_address, user_agent=user_agent,
                failure_reason=LoginFailureReason.INVALID_CREDENTIALS.value,
            )
            if attempts >= self.max_attempts:
                logger.security("OTP attempts exhausted", identifier=masked, otp_id=record.id)
                raise AuthError(ErrorCode.OTP_MAX_ATTEMPTS)
            raise AuthError(ErrorCode.OTP_INVALID)

        # Wrong guesses from other requests may have landed since the read
        consumed = await self.db.execute(
            update(OTPCode)
            .where(self._redeemable(record.id, now))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if consumed.rowcount != 1:
            raise await self._dead_record_error(record.id)

        user = await self._find_user(identifier, channel, tenant_id)
        if user is None:
            raise AuthError(ErrorCode.IDENTIFIER_NOT_FOUND)

        if user.is_locked(now):
            await self.audit.record_login_attempt(
                identifier, False, user=user, ip_address=ip_address, user_agent=user_agent,
                failure_reason=LoginFailureReason.ACCOUNT_LOCKED.value,
            )
            raise AuthError(ErrorCode.ACCOUNT_LOCKED, retry_after=int((user.locked_until - now).total_seconds()))
        if not user.is_active:
            await self.audit.record_login_attempt(
                identifier, False, user=user, ip_address=ip_address, user_agent=user_agent,
                failure_reason=LoginFailureReason.ACCOUNT_INACTIVE.value,
            )
            raise AuthError(ErrorCode.ACCOUNT_INACTIVE)

        if channel == OTPChannel.SMS and user.phone_verified_at is None:
            user.phone_verified_at = now
        user.last_login_at = now
        user.failed_login_attempts = 0
        await self.db.commit()

        pair = await self.tokens.issue(user, ip_address=ip_address, user_agent=user_agent)

        logger.info("OTP login succeeded", user_id=user.id, channel=channel.value)
        await self.audit.record_login_attempt(identifier, True, user=user, ip_address=ip_address, user_agent=user_agent)
        await self.audit.record(
            AuditAction.OTP_LOGIN, user=user, ip_address=ip_address, user_agent=user_agent,
            details={"channel": channel.value},
        )
        return pair, user

    def _redeemable(self, record_id: int, now):
        return and_(
            OTPCode.id == record_id,
            OTPCode.used_at.is_(None),
            OTPCode.expires_at > now,
            OTPCode.attempts < self.max_attempts,
        )

    async def _dead_record_error(self, record_id: int) -> AuthError:
        """Name the reason a conditional update on the record matched nothing"""
        record = await self.db.get(OTPCode, record_id, populate_existing=True)
        if record is None or record.is_expired():
            return AuthError(ErrorCode.OTP_EXPIRED)
        if record.is_used:
            return AuthError(ErrorCode.OTP_ALREADY_USED)
        logger.security("OTP attempts exhausted", identifier=mask_identifier(record.identifier), otp_id=record.id)
        return AuthError(ErrorCode.OTP_MAX_ATTEMPTS)

    async def cleanup_expired(self) -> int:
        """Delete codes that expired or were used more than an hour ago"""
        cutoff = utcnow() - timedelta(hours=1)
        result = await self.db.execute(
            delete(OTPCode).where(or_(OTPCode.expires_at < cutoff, OTPCode.used_at < cutoff))
        )
        await self.db.commit()
        return result.rowcount
