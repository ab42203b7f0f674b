"""
Security primitives: password hashing, JWT encoding and one-time code hashing.

Stateless helpers only. Anything that touches storage lives in app.services.
"""

import hashlib
import hmac
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pyotp
from jose import jwt
from passlib.context import CryptContext

from app.core.config import settings

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM

ACCESS_TOKEN_TYPE = "access"
PARTIAL_TOKEN_TYPE = "partial"
TWO_FACTOR_PENDING_SCOPE = "2fa_pending"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Passwords ====================

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not plain_password or not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIAL_CHARACTERS = set(string.punctuation)


def password_policy_violation(password: str) -> Optional[str]:
    """
    Check a new password against the policy.

    Returns:
        A description of the first rule broken, or None if the password is acceptable
    """
    password = password or ""
    if len(password) < PASSWORD_MIN_LENGTH:
        return f"password must be at least {PASSWORD_MIN_LENGTH} characters"
    if len(password) > PASSWORD_MAX_LENGTH:
        return f"password must be at most {PASSWORD_MAX_LENGTH} characters"
    if not any(c.isupper() for c in password):
        return "password must contain an uppercase letter"
    if not any(c.islower() for c in password):
        return "password must contain a lowercase letter"
    if not any(c.isdigit() for c in password):
        return "password must contain a digit"
    if not any(c in PASSWORD_SPECIAL_CHARACTERS for c in password):
        return "password must contain a special character"
    return None


# ==================== JWT ====================

def create_access_token(
    data: Dict[str, Any],
    token_version: int = 1,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed access token.

    Args:
        data: Claims to embed (must contain "sub")
        token_version: User token version; bumping it invalidates older tokens
        expires_delta: Custom lifetime (defaults to ACCESS_TOKEN_EXPIRE_MINUTES)

    Returns:
        Encoded JWT
    """
    now = utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = dict(data)
    to_encode.update({
        "type": ACCESS_TOKEN_TYPE,
        "tv": token_version,
        "iat": now,
        "exp": expire,
        "iss": settings.JWT_ISSUER,
        "jti": uuid.uuid4().hex,
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_partial_token(
    user_id: int,
    tenant_id: int,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a token proving "password verified, second factor pending".

    It carries no permissions and is only accepted by the 2FA validation
    endpoint. The jti is what makes it single-use.
    """
    now = utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.PARTIAL_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "tid": tenant_id,
        "type": PARTIAL_TOKEN_TYPE,
        "scope": TWO_FACTOR_PENDING_SCOPE,
        "iat": now,
        "exp": expire,
        "iss": settings.JWT_ISSUER,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and verify a JWT. Raises jose.JWTError (or ExpiredSignatureError)."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], issuer=settings.JWT_ISSUER)


# ==================== Opaque tokens ====================

def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def hash_token(token: str) -> str:
    """SHA-256 of an opaque token, used as its storage key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ==================== One-time codes ====================

def generate_otp(length: int = 6) -> str:
    """Fixed-length numeric code, zero padded."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_otp(code: str) -> str:
    return hmac.new(SECRET_KEY.encode("utf-8"), code.strip().encode("utf-8"), hashlib.sha256).hexdigest()


def verify_otp(code: str, code_hash: str) -> bool:
    if not code or not code_hash:
        return False
    return hmac.compare_digest(hash_otp(code), code_hash)


BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_backup_code(length: int = 8) -> str:
    return "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))


def normalize_backup_code(code: str) -> str:
    return code.replace(" ", "").replace("-", "").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


# ==================== TOTP ====================

TOTP_INTERVAL_SECONDS = 30


def generate_totp_secret() -> str:
    # 32 chars base32
    return pyotp.random_base32(length=32)


def match_totp_step(
    secret: str,
    code: str,
    valid_window: Optional[int] = None,
    for_time: Optional[float] = None,
) -> Optional[int]:
    """
    Find the time step a TOTP code belongs to.

    Returns:
        The step counter if the code matches a step inside the accepted
        window, None otherwise
    """
    if not secret or not code:
        return None
    window = settings.TOTP_VALID_WINDOW if valid_window is None else valid_window
    totp = pyotp.TOTP(secret, interval=TOTP_INTERVAL_SECONDS)
    now = time.time() if for_time is None else for_time
    code = code.strip()
    for offset in range(-window, window + 1):
        moment = now + offset * TOTP_INTERVAL_SECONDS
        if hmac.compare_digest(totp.at(moment), code):
            return int(moment // TOTP_INTERVAL_SECONDS)
    return None


def verify_totp(secret: str, code: str, valid_window: Optional[int] = None) -> bool:
    return match_totp_step(secret, code, valid_window=valid_window) is not None
