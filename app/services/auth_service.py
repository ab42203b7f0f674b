"""
Login Orchestrator.

Password login is a two-step protocol. `login` either finishes with a token
pair or, when 2FA is on, stops with a partial token. `validate_two_factor_login`
redeems that partial token together with a second factor. No server-side
state is kept between the two calls; the partial token is the only carrier
of "password verified".

Email verification and password reset run on single-use emailed tokens
stored as hashes in verification_tokens.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthError, ErrorCode
from app.core.security import (
    generate_refresh_token,
    get_password_hash,
    hash_token,
    password_policy_violation,
    utcnow,
    verify_password,
)
from app.logging import get_logger, mask_identifier
from app.models.audit_log import AuditAction
from app.models.login_attempt import LoginFailureReason
from app.models.otp import OTPChannel
from app.models.tenant import Tenant
from app.models.user import User
from app.models.verification_token import VerificationToken, VerificationTokenType
from app.services.audit import AuditService
from app.services.delivery import Delivery, DeliveryError
from app.services.token_service import TokenPair, TokenService
from app.services.totp_service import TOTPService

logger = get_logger("auth")


@dataclass
class LoginResult:
    user: User
    token_pair: Optional[TokenPair] = None
    requires_two_factor: bool = False
    partial_token: Optional[str] = None


class AuthService:
    def __init__(
        self,
        db: AsyncSession,
        tokens: TokenService,
        totp: TOTPService,
        audit: AuditService,
        delivery: Delivery = None,
        max_failed_attempts: int = None,
        lockout: timedelta = None,
    ):
        self.db = db
        self.tokens = tokens
        self.totp = totp
        self.audit = audit
        self.delivery = delivery
        self.max_failed_attempts = max_failed_attempts or settings.MAX_FAILED_LOGIN_ATTEMPTS
        self.lockout = lockout or timedelta(minutes=settings.LOCKOUT_MINUTES)

    async def _fail(
        self,
        code: ErrorCode,
        email: str,
        reason: LoginFailureReason,
        user: Optional[User] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        retry_after: Optional[int] = None,
    ):
        await self.audit.record_login_attempt(
            email, False, user=user, ip_address=ip_address, user_agent=user_agent, failure_reason=reason.value,
        )
        raise AuthError(code, retry_after=retry_after)

    # ==================== Step 1: password ====================

    async def login(
        self,
        email: str,
        password: str,
        tenant_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        Authenticate with email and password within a tenant.

        Returns:
            LoginResult with a token pair, or with requires_two_factor and a
            partial token when the user has 2FA enabled

        Raises:
            AuthError: TENANT_NOT_FOUND, TENANT_INACTIVE, INVALID_CREDENTIALS,
                ACCOUNT_INACTIVE, EMAIL_NOT_VERIFIED, ACCOUNT_LOCKED
        """
        email = (email or "").strip().lower()

        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None:
            await self._fail(ErrorCode.TENANT_NOT_FOUND, email, LoginFailureReason.TENANT_NOT_FOUND,
                             ip_address=ip_address, user_agent=user_agent)
        if not tenant.is_active:
            await self._fail(ErrorCode.TENANT_INACTIVE, email, LoginFailureReason.TENANT_INACTIVE,
                             ip_address=ip_address, user_agent=user_agent)

        result = await self.db.execute(
            select(User)
            .filter(User.tenant_id == tenant_id, User.email == email)
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            await self._fail(ErrorCode.INVALID_CREDENTIALS, email, LoginFailureReason.USER_NOT_FOUND,
                             ip_address=ip_address, user_agent=user_agent)
        if not user.is_active:
            await self._fail(ErrorCode.ACCOUNT_INACTIVE, email, LoginFailureReason.ACCOUNT_INACTIVE,
                             user=user, ip_address=ip_address, user_agent=user_agent)
        if not user.is_email_verified:
            await self._fail(ErrorCode.EMAIL_NOT_VERIFIED, email, LoginFailureReason.EMAIL_NOT_VERIFIED,
                             user=user, ip_address=ip_address, user_agent=user_agent)

        now = utcnow()
        # Locked accounts never reach the password hash
        if user.is_locked(now):
            await self._fail(ErrorCode.ACCOUNT_LOCKED, email, LoginFailureReason.ACCOUNT_LOCKED,
                             user=user, ip_address=ip_address, user_agent=user_agent,
                             retry_after=int((user.locked_until - now).total_seconds()))

        if not user.has_password or not verify_password(password, user.password):
            await self._register_failed_password(user, email, ip_address, user_agent)

        if user.failed_login_attempts:
            user.failed_login_attempts = 0
            user.locked_until = None
            await self.db.commit()

        if user.is_two_factor_enabled:
            logger.info("Password accepted, second factor pending", user_id=user.id)
            return LoginResult(user=user, requires_two_factor=True, partial_token=self.tokens.issue_partial(user))

        pair = await self._complete_login(user, email, ip_address, user_agent)
        return LoginResult(user=user, token_pair=pair)

    async def _register_failed_password(self, user: User, email: str, ip_address, user_agent):
        """
        Count a wrong password and lock the account at the threshold.

        The increment is one UPDATE ... RETURNING, so concurrent failures
        are never lost.
        """
        attempts = (await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(failed_login_attempts=User.failed_login_attempts + 1)
            .returning(User.failed_login_attempts)
            .execution_options(synchronize_session=False)
        )).scalar_one()

        if attempts >= self.max_failed_attempts:
            locked_until = utcnow() + self.lockout
            await self.db.execute(
                update(User)
                .where(User.id == user.id)
                .values(locked_until=locked_until, failed_login_attempts=0)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            await self.db.refresh(user)

            logger.security("Account locked after failed logins", user_id=user.id, attempts=attempts, ip=ip_address)
            await self.audit.record(
                AuditAction.ACCOUNT_LOCKED, user=user, ip_address=ip_address, user_agent=user_agent,
                details={"attempts": attempts, "locked_minutes": int(self.lockout.total_seconds() // 60)},
            )
            await self._fail(ErrorCode.ACCOUNT_LOCKED, email, LoginFailureReason.INVALID_CREDENTIALS,
                             user=user, ip_address=ip_address, user_agent=user_agent,
                             retry_after=int(self.lockout.total_seconds()))

        await self.db.commit()
        await self.db.refresh(user)
        logger.warning("Invalid password", user_id=user.id, attempts=attempts)
        await self.audit.record(AuditAction.LOGIN_FAILED, user=user, ip_address=ip_address, user_agent=user_agent)
        await self._fail(ErrorCode.INVALID_CREDENTIALS, email, LoginFailureReason.INVALID_CREDENTIALS,
                         user=user, ip_address=ip_address, user_agent=user_agent)

    async def _complete_login(self, user: User, identifier: str, ip_address, user_agent) -> TokenPair:
        user.last_login_at = utcnow()
        await self.db.commit()

        pair = await self.tokens.issue(user, ip_address=ip_address, user_agent=user_agent)

        logger.info("Login succeeded", user_id=user.id, tenant_id=user.tenant_id)
        await self.audit.record_login_attempt(identifier, True, user=user, ip_address=ip_address, user_agent=user_agent)
        await self.audit.record(AuditAction.LOGIN, user=user, ip_address=ip_address, user_agent=user_agent)
        return pair

    # ==================== Step 2: second factor ====================

    async def validate_two_factor_login(
        self,
        partial_token: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[TokenPair, User]:
        """
        Finish a 2FA login with a TOTP code or a backup code.

        The partial token is burned before the code is checked: a wrong code
        costs the caller a fresh password login.

        Raises:
            AuthError: INVALID_TOKEN, EXPIRED_TOKEN, ACCOUNT_INACTIVE,
                TOTP_RATE_LIMIT_EXCEEDED, TOTP_NOT_ENABLED, TOTP_INVALID_CODE
        """
        claims = await self.tokens.redeem_partial(partial_token)

        user = await self.db.get(User, claims.user_id)
        if user is None or user.tenant_id != claims.tenant_id:
            raise AuthError(ErrorCode.INVALID_TOKEN)
        if not user.is_active:
            raise AuthError(ErrorCode.ACCOUNT_INACTIVE)

        identifier = user.email or user.phone
        try:
            await self.totp.validate_for_login(user, code, ip_address=ip_address)
        except AuthError as e:
            await self.audit.record_login_attempt(
                identifier, False, user=user, ip_address=ip_address, user_agent=user_agent,
                failure_reason=LoginFailureReason.INVALID_SECOND_FACTOR.value,
            )
            logger.security("Second factor rejected", user_id=user.id, code=e.code.value, ip=ip_address)
            raise

        pair = await self._complete_login(user, identifier, ip_address, user_agent)
        return pair, user

    # ==================== Session end ====================

    async def refresh(self, refresh_token: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> TokenPair:
        return await self.tokens.refresh(refresh_token, ip_address=ip_address, user_agent=user_agent)

    async def logout(
        self,
        refresh_token: str,
        user: Optional[User] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Revoke exactly the presented refresh token; other sessions stay valid"""
        revoked = await self.tokens.revoke(refresh_token)
        if revoked:
            await self.audit.record(
                AuditAction.LOGOUT, user=user, ip_address=ip_address, user_agent=user_agent,
                entity_type="refresh_token",
            )
        return revoked

    async def logout_all(self, user: User, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> int:
        revoked = await self.tokens.revoke_all(user)
        logger.security("All sessions revoked", user_id=user.id, revoked=revoked)
        await self.audit.record(
            AuditAction.LOGOUT_ALL, user=user, ip_address=ip_address, user_agent=user_agent,
            details={"revoked": revoked},
        )
        return revoked

    # ==================== Email verification and password reset ====================

    async def request_email_verification(self, email: str, tenant_id: int, ip_address: Optional[str] = None) -> None:
        """
        Email a verification token. Silent for unknown, inactive and already
        verified accounts so the response never reveals which emails exist.
        """
        user = await self._find_active_user(email, tenant_id)
        if user is None or user.is_email_verified:
            logger.info("Email verification not sent", email=mask_identifier(email), tenant_id=tenant_id)
            return

        hours = settings.EMAIL_VERIFY_TOKEN_EXPIRE_HOURS
        token = await self._issue_token(user, VerificationTokenType.EMAIL_VERIFY, timedelta(hours=hours))
        await self._send_token(
            user, token, f"Your MSLS email verification token is {token}. It expires in {hours} hours.",
        )
        await self.audit.record(
            AuditAction.EMAIL_VERIFICATION_SENT, user=user, ip_address=ip_address, entity_type="verification_token",
        )

    async def verify_email(self, token: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> User:
        """
        Raises:
            AuthError: VERIFICATION_TOKEN_NOT_FOUND, VERIFICATION_TOKEN_USED,
                VERIFICATION_TOKEN_EXPIRED, ACCOUNT_INACTIVE
        """
        record = await self._find_token(token, VerificationTokenType.EMAIL_VERIFY)
        user = await self._token_owner(record)

        now = utcnow()
        await self._consume_token(record, now)
        if not user.is_email_verified:
            user.email_verified_at = now
        await self.db.commit()

        logger.info("Email verified", user_id=user.id)
        await self.audit.record(AuditAction.EMAIL_VERIFIED, user=user, ip_address=ip_address, user_agent=user_agent)
        return user

    async def request_password_reset(self, email: str, tenant_id: int, ip_address: Optional[str] = None) -> None:
        """Email a password reset token. Silent for unknown and inactive accounts."""
        user = await self._find_active_user(email, tenant_id)
        if user is None:
            logger.info("Password reset not sent", email=mask_identifier(email), tenant_id=tenant_id)
            return

        hours = settings.PASSWORD_RESET_TOKEN_EXPIRE_HOURS
        token = await self._issue_token(user, VerificationTokenType.PASSWORD_RESET, timedelta(hours=hours))
        await self._send_token(
            user, token, f"Your MSLS password reset token is {token}. It expires in {hours} hours.",
        )
        logger.security("Password reset requested", user_id=user.id, ip=ip_address)
        await self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED, user=user, ip_address=ip_address, entity_type="verification_token",
        )

    async def reset_password(
        self,
        token: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """
        Set a new password with a reset token.

        The account is unlocked and every session is revoked, including
        outstanding access tokens. A rejected password leaves the token usable.

        Raises:
            AuthError: WEAK_PASSWORD, VERIFICATION_TOKEN_NOT_FOUND,
                VERIFICATION_TOKEN_USED, VERIFICATION_TOKEN_EXPIRED, ACCOUNT_INACTIVE
        """
        violation = password_policy_violation(new_password)
        if violation:
            raise AuthError(ErrorCode.WEAK_PASSWORD, violation)

        record = await self._find_token(token, VerificationTokenType.PASSWORD_RESET)
        user = await self._token_owner(record)

        await self._consume_token(record, utcnow())
        user.password = get_password_hash(new_password)
        user.failed_login_attempts = 0
        user.locked_until = None
        await self.db.commit()

        revoked = await self.tokens.revoke_all(user)

        logger.security("Password reset", user_id=user.id, revoked=revoked, ip=ip_address)
        await self.audit.record(
            AuditAction.PASSWORD_RESET, user=user, ip_address=ip_address, user_agent=user_agent,
            details={"revoked": revoked},
        )
        return user

    async def _find_active_user(self, email: str, tenant_id: int) -> Optional[User]:
        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            return None
        user = (await self.db.execute(
            select(User).filter(User.tenant_id == tenant_id, User.email == (email or "").strip().lower())
        )).scalar_one_or_none()
        if user is None or not user.is_active:
            return None
        return user

    async def _issue_token(self, user: User, token_type: VerificationTokenType, lifetime: timedelta) -> str:
        """Store a new token and expire the user's earlier unused ones of the same type"""
        now = utcnow()
        await self.db.execute(
            update(VerificationToken)
            .where(
                VerificationToken.user_id == user.id,
                VerificationToken.type == token_type.value,
                VerificationToken.used_at.is_(None),
                VerificationToken.expires_at > now,
            )
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
        token = generate_refresh_token()
        self.db.add(VerificationToken(
            user_id=user.id, token_hash=hash_token(token), type=token_type.value, expires_at=now + lifetime,
        ))
        await self.db.commit()
        return token

    async def _send_token(self, user: User, token: str, message: str) -> None:
        # Failures stay invisible to the caller; the token just stops working
        try:
            await self.delivery.send(OTPChannel.EMAIL, user.email, message)
        except DeliveryError as e:
            await self.db.execute(
                update(VerificationToken)
                .where(VerificationToken.token_hash == hash_token(token))
                .values(expires_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            logger.error(f"Verification email failed: {e}", exc_info=False, user_id=user.id)

    async def _find_token(self, token: str, token_type: VerificationTokenType) -> VerificationToken:
        record = (await self.db.execute(
            select(VerificationToken)
            .filter(VerificationToken.token_hash == hash_token(token or ""),
                    VerificationToken.type == token_type.value)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if record is None:
            raise AuthError(ErrorCode.VERIFICATION_TOKEN_NOT_FOUND)
        if record.is_used:
            raise AuthError(ErrorCode.VERIFICATION_TOKEN_USED)
        if record.is_expired():
            raise AuthError(ErrorCode.VERIFICATION_TOKEN_EXPIRED)
        return record

    async def _token_owner(self, record: VerificationToken) -> User:
        user = await self.db.get(User, record.user_id, populate_existing=True)
        if user is None or not user.is_active:
            raise AuthError(ErrorCode.ACCOUNT_INACTIVE)
        return user

    async def _consume_token(self, record: VerificationToken, now) -> None:
        """Mark the token used (not committed). Only one of two concurrent redemptions wins."""
        result = await self.db.execute(
            update(VerificationToken)
            .where(
                VerificationToken.id == record.id,
                VerificationToken.used_at.is_(None),
                VerificationToken.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise AuthError(ErrorCode.VERIFICATION_TOKEN_USED)
