"""
TOTP Engine.

Secret provisioning, code validation with clock-skew tolerance, backup codes
and the enable/disable lifecycle of two-factor authentication.
"""

import base64
import hashlib
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthError, ErrorCode
from app.core.security import (
    TOTP_INTERVAL_SECONDS,
    generate_backup_code,
    generate_totp_secret,
    hash_backup_code,
    hash_token,
    match_totp_step,
    utcnow,
    verify_password,
)
from app.logging import get_logger
from app.models.audit_log import AuditAction
from app.models.backup_code import BackupCode
from app.models.user import User
from app.services.audit import AuditService
from app.services.rate_limiter import CounterStore

logger = get_logger("auth.totp")


@dataclass
class TOTPSetup:
    secret: str
    otpauth_url: str
    manual_entry: str
    qr_code: str


@dataclass
class TwoFactorStatus:
    enabled: bool
    pending_setup: bool
    backup_codes_remaining: int


def build_cipher(key: Optional[str] = None) -> Fernet:
    """
    Fernet cipher for TOTP secrets at rest.

    Uses TOTP_ENCRYPTION_KEY when set, otherwise a key derived from SECRET_KEY.
    """
    key = key or settings.TOTP_ENCRYPTION_KEY
    if key:
        return Fernet(key.encode("utf-8"))
    digest = hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def qr_png_base64(text: str) -> str:
    img = qrcode.make(text)
    buf = BytesIO()
    img.save(buf, "PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class TOTPService:
    def __init__(
        self,
        db: AsyncSession,
        counters: CounterStore,
        audit: AuditService,
        cipher: Fernet = None,
        issuer: str = None,
        max_failed_attempts: int = None,
        window_sec: int = None,
        backup_code_count: int = None,
    ):
        self.db = db
        self.counters = counters
        self.audit = audit
        self.cipher = cipher or build_cipher()
        self.issuer = issuer or settings.TOTP_ISSUER
        self.max_failed_attempts = max_failed_attempts or settings.TOTP_MAX_FAILED_ATTEMPTS
        self.window_sec = window_sec or settings.TOTP_RATE_LIMIT_WINDOW_SECONDS
        self.backup_code_count = backup_code_count or settings.BACKUP_CODE_COUNT

    # ==================== Secrets ====================

    def encrypt_secret(self, secret: str) -> str:
        return self.cipher.encrypt(secret.encode("utf-8")).decode("utf-8")

    def decrypt_secret(self, encrypted: str) -> str:
        try:
            return self.cipher.decrypt(encrypted.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("Stored TOTP secret could not be decrypted", exc_info=False)
            raise

    # ==================== Failed-attempt window ====================

    def _failures_key(self, user: User) -> str:
        return self.counters.key("totp", "failures", user.id)

    async def _check_rate_limit(self, user: User) -> None:
        key = self._failures_key(user)
        if await self.counters.count(key) >= self.max_failed_attempts:
            retry_after = await self.counters.retry_after(key, default=self.window_sec)
            logger.security("TOTP attempts rate limited", user_id=user.id)
            raise AuthError(ErrorCode.TOTP_RATE_LIMIT_EXCEEDED, retry_after=retry_after)

    async def _record_failure(self, user: User, ip_address: Optional[str], reason: str) -> None:
        failures = await self.counters.hit(self._failures_key(user), self.window_sec)
        logger.warning("Invalid two-factor code", user_id=user.id, failures=failures, ip=ip_address)
        await self.audit.record(
            AuditAction.TWO_FACTOR_FAILED, user=user, ip_address=ip_address,
            details={"reason": reason, "failures": failures},
        )

    # ==================== Live codes ====================

    async def _accept_live_code(self, user: User, code: str, purpose: str) -> bool:
        """
        Check a TOTP code and spend its time step.

        A step is accepted once per secret and purpose, so a captured code
        cannot be replayed while it is still inside the skew window.
        """
        step = match_totp_step(self.decrypt_secret(user.two_factor_secret), code)
        if step is None:
            return False
        # Re-enrolment stores a new ciphertext, which starts a fresh set of steps
        fingerprint = hash_token(user.two_factor_secret)[:16]
        # Long enough to outlive every window the step can be accepted in
        ttl = TOTP_INTERVAL_SECONDS * (2 * settings.TOTP_VALID_WINDOW + 2)
        key = self.counters.key("totp", "step", user.id, fingerprint, purpose, step)
        if not await self.counters.claim(key, ttl):
            logger.security("TOTP code replayed", user_id=user.id, purpose=purpose)
            return False
        return True

    # ==================== Backup codes ====================

    async def _replace_backup_codes(self, user: User) -> List[str]:
        """Delete every backup code of the user and store a fresh set (not committed)"""
        codes = [generate_backup_code(settings.BACKUP_CODE_LENGTH) for _ in range(self.backup_code_count)]
        await self.db.execute(delete(BackupCode).where(BackupCode.user_id == user.id))
        self.db.add_all([BackupCode(user_id=user.id, code_hash=hash_backup_code(c)) for c in codes])
        return codes

    async def consume_backup_code(self, user: User, code: str) -> bool:
        """
        Mark a matching unused backup code as used.

        The used_at guard makes consumption atomic: of two concurrent uses of
        the same code only one changes a row.
        """
        if not code:
            return False
        result = await self.db.execute(
            update(BackupCode)
            .where(
                BackupCode.user_id == user.id,
                BackupCode.code_hash == hash_backup_code(code),
                BackupCode.used_at.is_(None),
            )
            .values(used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount >= 1

    async def remaining_backup_codes(self, user: User) -> int:
        result = await self.db.execute(
            select(func.count(BackupCode.id)).where(
                BackupCode.user_id == user.id, BackupCode.used_at.is_(None)
            )
        )
        return int(result.scalar_one())

    # ==================== Lifecycle ====================

    async def setup(self, user: User) -> TOTPSetup:
        """
        Generate a new pending secret for the user.

        Calling it again before verification replaces the pending secret.

        Raises:
            AuthError: TOTP_ALREADY_ENABLED
        """
        if user.is_two_factor_enabled:
            raise AuthError(ErrorCode.TOTP_ALREADY_ENABLED)

        secret = generate_totp_secret()
        account = user.email or user.phone or str(user.id)
        url = pyotp.TOTP(secret).provisioning_uri(name=account, issuer_name=self.issuer)

        user.two_factor_secret = self.encrypt_secret(secret)
        user.two_factor_enabled = False
        user.totp_verified_at = None
        await self.db.commit()

        logger.info("TOTP setup started", user_id=user.id)
        return TOTPSetup(
            secret=secret,
            otpauth_url=url,
            manual_entry=" ".join(secret[i:i + 4] for i in range(0, len(secret), 4)),
            qr_code=qr_png_base64(url),
        )

    async def verify_and_enable(self, user: User, code: str, ip_address: Optional[str] = None) -> List[str]:
        """
        Confirm the pending secret with a live code and enable 2FA.

        Returns:
            The new backup codes in cleartext (shown exactly once)

        Raises:
            AuthError: TOTP_RATE_LIMIT_EXCEEDED, TOTP_NOT_SETUP,
                TOTP_ALREADY_ENABLED, TOTP_INVALID_CODE
        """
        await self._check_rate_limit(user)

        if not user.two_factor_secret:
            await self._record_failure(user, ip_address, "not_setup")
            raise AuthError(ErrorCode.TOTP_NOT_SETUP)
        if user.is_two_factor_enabled:
            raise AuthError(ErrorCode.TOTP_ALREADY_ENABLED)

        if not await self._accept_live_code(user, code, "enable"):
            await self._record_failure(user, ip_address, "setup_verification")
            raise AuthError(ErrorCode.TOTP_INVALID_CODE)

        codes = await self._replace_backup_codes(user)
        user.two_factor_enabled = True
        user.totp_verified_at = utcnow()
        await self.db.commit()

        logger.security("Two-factor authentication enabled", user_id=user.id)
        await self.audit.record(AuditAction.TWO_FACTOR_ENABLED, user=user, ip_address=ip_address)
        return codes

    async def validate_for_login(self, user: User, code: str, ip_address: Optional[str] = None) -> None:
        """
        Check a second factor: a live TOTP code or one unused backup code.

        Raises:
            AuthError: TOTP_RATE_LIMIT_EXCEEDED, TOTP_NOT_ENABLED, TOTP_INVALID_CODE
        """
        await self._check_rate_limit(user)

        if not user.is_two_factor_enabled:
            raise AuthError(ErrorCode.TOTP_NOT_ENABLED)

        if await self._accept_live_code(user, code, "login"):
            return

        if await self.consume_backup_code(user, code):
            logger.security("Backup code used for login", user_id=user.id)
            await self.audit.record(
                AuditAction.BACKUP_CODE_USED, user=user, ip_address=ip_address,
                details={"remaining": await self.remaining_backup_codes(user)},
            )
            return

        await self._record_failure(user, ip_address, "login")
        raise AuthError(ErrorCode.TOTP_INVALID_CODE)

    async def disable(self, user: User, password: str, ip_address: Optional[str] = None) -> None:
        """
        Turn 2FA off. Requires the account password, not just a session.

        Raises:
            AuthError: TOTP_NOT_ENABLED, INVALID_CREDENTIALS
        """
        if not user.two_factor_secret and not user.two_factor_enabled:
            raise AuthError(ErrorCode.TOTP_NOT_ENABLED)
        if not verify_password(password, user.password):
            logger.security("2FA disable rejected: wrong password", user_id=user.id, ip=ip_address)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)

        await self.db.execute(delete(BackupCode).where(BackupCode.user_id == user.id))
        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.totp_verified_at = None
        await self.db.commit()

        logger.security("Two-factor authentication disabled", user_id=user.id)
        await self.audit.record(AuditAction.TWO_FACTOR_DISABLED, user=user, ip_address=ip_address)

    async def regenerate_backup_codes(self, user: User, code: str, ip_address: Optional[str] = None) -> List[str]:
        """
        Replace the backup code set. Only a live TOTP code is accepted,
        never a backup code.

        Raises:
            AuthError: TOTP_RATE_LIMIT_EXCEEDED, TOTP_NOT_ENABLED, TOTP_INVALID_CODE
        """
        await self._check_rate_limit(user)

        if not user.is_two_factor_enabled:
            raise AuthError(ErrorCode.TOTP_NOT_ENABLED)

        if not await self._accept_live_code(user, code, "regenerate"):
            await self._record_failure(user, ip_address, "regenerate_backup_codes")
            raise AuthError(ErrorCode.TOTP_INVALID_CODE)

        codes = await self._replace_backup_codes(user)
        await self.db.commit()

        await self.audit.record(AuditAction.BACKUP_CODES_REGENERATED, user=user, ip_address=ip_address)
        return codes

    async def status(self, user: User) -> TwoFactorStatus:
        enabled = user.is_two_factor_enabled
        return TwoFactorStatus(
            enabled=enabled,
            pending_setup=bool(user.two_factor_secret) and not enabled,
            backup_codes_remaining=await self.remaining_backup_codes(user) if enabled else 0,
        )
