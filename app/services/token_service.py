"""
Token Issuer.

Mints access/refresh pairs, rotates refresh tokens on every use, revokes
them on logout, and issues/redeems the single-use partial tokens that carry
"password verified, second factor pending" between the two login calls.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import ExpiredSignatureError, JWTError
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthError, ErrorCode
from app.core.security import (
    PARTIAL_TOKEN_TYPE,
    TWO_FACTOR_PENDING_SCOPE,
    create_access_token,
    create_partial_token,
    decode_token,
    generate_refresh_token,
    hash_token,
    utcnow,
)
from app.logging import get_logger
from app.models.audit_log import AuditAction
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.services.audit import AuditService
from app.services.rate_limiter import CounterStore

logger = get_logger("auth.tokens")


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # seconds
    expires_at: datetime
    token_type: str = "bearer"


@dataclass
class PartialTokenClaims:
    user_id: int
    tenant_id: int
    jti: str


class TokenService:
    def __init__(
        self,
        db: AsyncSession,
        counters: CounterStore,
        audit: AuditService,
        access_ttl: timedelta = None,
        refresh_ttl: timedelta = None,
        partial_ttl: timedelta = None,
    ):
        self.db = db
        self.counters = counters
        self.audit = audit
        self.access_ttl = access_ttl or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        self.refresh_ttl = refresh_ttl or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
        self.partial_ttl = partial_ttl or timedelta(minutes=settings.PARTIAL_TOKEN_EXPIRE_MINUTES)

    # ==================== Issuance ====================

    async def issue(self, user: User, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> TokenPair:
        """
        Mint an access token and a new server-side refresh token record.

        The refresh token row is committed before the pair is returned.
        """
        now = utcnow()
        access_token = create_access_token(
            data={"sub": str(user.id), "tid": user.tenant_id, "email": user.email},
            token_version=user.token_version or 1,
            expires_delta=self.access_ttl,
        )

        refresh_token = generate_refresh_token()
        self.db.add(RefreshToken(
            user_id=user.id,
            token_hash=hash_token(refresh_token),
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=now + self.refresh_ttl,
        ))
        await self.db.commit()

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            expires_at=now + self.access_ttl,
        )

    # ==================== Rotation ====================

    async def refresh(self, refresh_token: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> TokenPair:
        """
        Redeem a refresh token for a brand-new pair (rotation on use).

        The presented token is revoked with a single conditional UPDATE, so
        of two concurrent redemptions exactly one succeeds. Re-presenting a
        rotated token fails with REFRESH_TOKEN_REVOKED.

        Raises:
            AuthError: REFRESH_TOKEN_NOT_FOUND, REFRESH_TOKEN_REVOKED,
                REFRESH_TOKEN_EXPIRED, ACCOUNT_INACTIVE
        """
        result = await self.db.execute(
            select(RefreshToken)
            .filter(RefreshToken.token_hash == hash_token(refresh_token))
            .execution_options(populate_existing=True)
        )
        stored = result.scalar_one_or_none()

        if stored is None:
            await self.audit.record(
                AuditAction.TOKEN_REFRESH_FAILED, ip_address=ip_address, user_agent=user_agent,
                entity_type="refresh_token", details={"reason": "token_not_found"},
            )
            raise AuthError(ErrorCode.REFRESH_TOKEN_NOT_FOUND)

        user = await self.db.get(User, stored.user_id)

        if stored.is_revoked:
            await self._reject_revoked(stored, user, ip_address, user_agent)

        now = utcnow()
        if stored.is_expired(now):
            await self.audit.record(
                AuditAction.TOKEN_REFRESH_FAILED, user=user, ip_address=ip_address, user_agent=user_agent,
                entity_type="refresh_token", details={"reason": "token_expired"},
            )
            raise AuthError(ErrorCode.REFRESH_TOKEN_EXPIRED)

        revoked = await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.id == stored.id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if revoked.rowcount != 1:
            # Lost the race against a concurrent redemption
            await self._reject_revoked(stored, user, ip_address, user_agent)

        if user is None or not user.is_active:
            raise AuthError(ErrorCode.ACCOUNT_INACTIVE)

        pair = await self.issue(user, ip_address=ip_address, user_agent=user_agent)
        await self.audit.record(
            AuditAction.TOKEN_REFRESH, user=user, ip_address=ip_address, user_agent=user_agent,
            entity_type="refresh_token", details={"reason": "rotation"},
        )
        return pair

    async def _reject_revoked(self, stored: RefreshToken, user: Optional[User], ip_address, user_agent):
        logger.security(
            "Revoked refresh token presented (possible replay)",
            user_id=stored.user_id, token_id=stored.id, ip=ip_address,
        )
        await self.audit.record(
            AuditAction.TOKEN_REFRESH_FAILED, user=user, ip_address=ip_address, user_agent=user_agent,
            entity_type="refresh_token", details={"reason": "token_revoked"},
        )
        raise AuthError(ErrorCode.REFRESH_TOKEN_REVOKED)

    # ==================== Revocation ====================

    async def revoke(self, refresh_token: str) -> bool:
        """
        Revoke exactly the presented refresh token.

        Returns:
            True if an active token was revoked, False if it was unknown or
            already revoked
        """
        result = await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(refresh_token), RefreshToken.revoked_at.is_(None))
            .values(revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def revoke_all(self, user: User) -> int:
        """
        Revoke every active refresh token of a user and bump token_version,
        which invalidates all outstanding access tokens.

        Returns:
            Number of refresh tokens revoked
        """
        result = await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user.id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(token_version=User.token_version + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(user)
        return result.rowcount

    async def cleanup_expired(self) -> int:
        """Delete refresh tokens that expired or were revoked more than an hour ago"""
        cutoff = utcnow() - timedelta(hours=1)
        result = await self.db.execute(
            delete(RefreshToken).where(
                or_(RefreshToken.expires_at < cutoff, RefreshToken.revoked_at < cutoff)
            )
        )
        await self.db.commit()
        return result.rowcount

    # ==================== Partial tokens ====================

    def issue_partial(self, user: User) -> str:
        return create_partial_token(user.id, user.tenant_id, expires_delta=self.partial_ttl)

    async def redeem_partial(self, partial_token: str) -> PartialTokenClaims:
        """
        Verify a partial token and burn it.

        The jti is claimed in the shared counter store for the token's
        lifetime, so any instance sharing that store rejects a second use.

        Raises:
            AuthError: EXPIRED_TOKEN or INVALID_TOKEN (malformed, wrong scope, replayed)
        """
        try:
            claims = decode_token(partial_token)
        except ExpiredSignatureError:
            raise AuthError(ErrorCode.EXPIRED_TOKEN)
        except JWTError:
            raise AuthError(ErrorCode.INVALID_TOKEN)

        if claims.get("type") != PARTIAL_TOKEN_TYPE or claims.get("scope") != TWO_FACTOR_PENDING_SCOPE:
            raise AuthError(ErrorCode.INVALID_TOKEN)

        jti = claims.get("jti")
        sub = claims.get("sub")
        if not jti or not sub:
            raise AuthError(ErrorCode.INVALID_TOKEN)

        ttl = max(int(claims["exp"] - utcnow().timestamp()), 1)
        if not await self.counters.claim(self.counters.key("partial", "used", jti), ttl):
            logger.security("Partial token replay rejected", user_id=sub)
            raise AuthError(ErrorCode.INVALID_TOKEN, "partial token already used")

        return PartialTokenClaims(user_id=int(sub), tenant_id=claims.get("tid"), jti=jti)
