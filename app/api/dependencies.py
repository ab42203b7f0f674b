from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.errors import AuthError, ErrorCode
from app.core.security import ACCESS_TOKEN_TYPE, decode_token
from app.db.session import SessionAsync
from app.models.user import User
from app.services.audit import AuditService
from app.services.auth_service import AuthService
from app.services.delivery import Delivery, build_delivery
from app.services.otp_service import OTPService
from app.services.rate_limiter import CounterStore
from app.services.token_service import TokenService
from app.services.totp_service import TOTPService

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="/api/auth/login",
    description="Access token from /api/auth/login, /api/auth/2fa/validate or /api/auth/otp/verify"
)


async def get_db():
    async with SessionAsync() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return SessionAsync


async def get_redis():
    redis = aioredis.from_url(settings.REDIS_URL)
    try:
        yield redis
    finally:
        await redis.aclose()


def get_delivery() -> Delivery:
    return build_delivery()


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# ==================== Services ====================

def get_counter_store(redis=Depends(get_redis)) -> CounterStore:
    return CounterStore(redis)


def get_audit_service(session_factory=Depends(get_session_factory)) -> AuditService:
    return AuditService(session_factory)


def get_token_service(
    db: AsyncSession = Depends(get_db),
    counters: CounterStore = Depends(get_counter_store),
    audit: AuditService = Depends(get_audit_service),
) -> TokenService:
    return TokenService(db, counters, audit)


def get_totp_service(
    db: AsyncSession = Depends(get_db),
    counters: CounterStore = Depends(get_counter_store),
    audit: AuditService = Depends(get_audit_service),
) -> TOTPService:
    return TOTPService(db, counters, audit)


def get_otp_service(
    db: AsyncSession = Depends(get_db),
    counters: CounterStore = Depends(get_counter_store),
    tokens: TokenService = Depends(get_token_service),
    delivery: Delivery = Depends(get_delivery),
    audit: AuditService = Depends(get_audit_service),
) -> OTPService:
    return OTPService(db, counters, tokens, delivery, audit)


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
    totp: TOTPService = Depends(get_totp_service),
    audit: AuditService = Depends(get_audit_service),
    delivery: Delivery = Depends(get_delivery),
) -> AuthService:
    return AuthService(db, tokens, totp, audit, delivery)


# ==================== Current user ====================

async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the user behind an access token.

    Partial tokens are rejected here, and so is any token minted before the
    user's token_version was last bumped.
    """
    try:
        payload = decode_token(token)
    except ExpiredSignatureError:
        raise AuthError(ErrorCode.EXPIRED_TOKEN)
    except JWTError:
        raise AuthError(ErrorCode.INVALID_TOKEN)

    user_id = payload.get("sub")
    tv = payload.get("tv")
    if payload.get("type") != ACCESS_TOKEN_TYPE or user_id is None or tv is None:
        raise AuthError(ErrorCode.INVALID_TOKEN)

    user = await db.get(User, int(user_id))
    if not user or int(tv) != int(user.token_version or 1):
        raise AuthError(ErrorCode.INVALID_TOKEN)
    if not user.is_active:
        raise AuthError(ErrorCode.ACCOUNT_INACTIVE)
    return user
