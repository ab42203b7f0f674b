"""
Global test fixtures and configuration.

This module provides base fixtures for all tests:
- Database engine/session on a throwaway SQLite file per test
- Redis client (in-memory fake)
- Recording delivery collaborator (captures sent codes)
- Service instances wired like the API wires them
- HTTP client with dependency overrides
- Base data fixtures (tenant, user, auth_headers)
"""

import os
import re
from typing import AsyncGenerator, List, Optional, Tuple

import pytest
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set test environment variables BEFORE importing app
os.environ["MODE"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["SECRET_KEY"] = "test-secret-key-do-not-use-in-production"
os.environ["DELIVERY_BACKEND"] = "console"
os.environ.pop("SENTRY_DSN", None)

from app.main import app  # noqa: E402
from app.api.dependencies import get_db, get_delivery, get_redis, get_session_factory  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.models.otp import OTPChannel  # noqa: E402
from app.services.audit import AuditService  # noqa: E402
from app.services.auth_service import AuthService  # noqa: E402
from app.services.delivery import DeliveryError  # noqa: E402
from app.services.otp_service import OTPService  # noqa: E402
from app.services.rate_limiter import CounterStore  # noqa: E402
from app.services.token_service import TokenService  # noqa: E402
from app.services.totp_service import TOTPService  # noqa: E402

DEFAULT_PASSWORD = "P@ssw0rd1"


# ==================== Database ====================

@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """
    Create a test database engine backed by a fresh SQLite file.

    A file (not :memory:) lets the audit collaborator write through its own
    connection, as it does in production.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        echo=False,  # Set to True for SQL debugging
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    session = session_factory()
    yield session
    await session.close()


# ==================== Redis ====================

@pytest.fixture(scope="function")
async def redis_client() -> AsyncGenerator[FakeAsyncRedis, None]:
    """
    Create fake Redis client (in-memory) for each test.
    """
    redis = FakeAsyncRedis()
    yield redis
    await redis.flushall()
    await redis.aclose()


@pytest.fixture
def counters(redis_client) -> CounterStore:
    return CounterStore(redis_client)


# ==================== Delivery ====================

class RecordingDelivery:
    """
    Delivery collaborator that keeps every message instead of sending it.

    Set `fail_channel` to make a channel raise DeliveryError.
    """

    CODE_PATTERN = re.compile(r"\b(\d{6})\b")
    TOKEN_PATTERN = re.compile(r"token is ([A-Za-z0-9_-]+)")

    def __init__(self):
        self.sent: List[Tuple[OTPChannel, str, str]] = []
        self.fail_channel: Optional[OTPChannel] = None

    async def send(self, channel: OTPChannel, identifier: str, message: str) -> None:
        if self.fail_channel == channel:
            raise DeliveryError(channel, "provider unavailable")
        self.sent.append((channel, identifier, message))

    def last_code(self, identifier: Optional[str] = None) -> str:
        return self._last_match(self.CODE_PATTERN, identifier, "code")

    def last_token(self, identifier: Optional[str] = None) -> str:
        return self._last_match(self.TOKEN_PATTERN, identifier, "token")

    def _last_match(self, pattern, identifier, what) -> str:
        for channel, to, message in reversed(self.sent):
            if identifier is None or to == identifier:
                return pattern.search(message).group(1)
        raise AssertionError(f"no {what} sent to {identifier}")


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


# ==================== Services ====================

@pytest.fixture
def audit(session_factory) -> AuditService:
    return AuditService(session_factory)


@pytest.fixture
def token_service(db_session, counters, audit) -> TokenService:
    return TokenService(db_session, counters, audit)


@pytest.fixture
def totp_service(db_session, counters, audit) -> TOTPService:
    return TOTPService(db_session, counters, audit)


@pytest.fixture
def otp_service(db_session, counters, token_service, delivery, audit) -> OTPService:
    return OTPService(db_session, counters, token_service, delivery, audit)


@pytest.fixture
def auth_service(db_session, token_service, totp_service, audit, delivery) -> AuthService:
    return AuthService(db_session, token_service, totp_service, audit, delivery)


# ==================== FastAPI Client ====================

@pytest.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    session_factory,
    redis_client: FakeAsyncRedis,
    delivery: RecordingDelivery,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create HTTP client for testing FastAPI endpoints.

    Overrides database, Redis and delivery dependencies with test fixtures.
    """

    async def override_get_db():
        yield db_session

    async def override_get_redis():
        yield redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_delivery] = lambda: delivery

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ==================== Base Data Fixtures ====================

@pytest.fixture
async def tenant(db_session: AsyncSession):
    """Active tenant (school)"""
    from tests.factories.tenant import TenantFactory
    tenant = await TenantFactory.create_async(db_session)
    await db_session.commit()
    return tenant


@pytest.fixture
async def user(db_session: AsyncSession, tenant):
    """
    Active user with verified email and password DEFAULT_PASSWORD, 2FA off.
    """
    from tests.factories.user import UserFactory
    user = await UserFactory.create_async(db_session, tenant_id=tenant.id)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def auth_headers(user):
    """
    Generate authentication headers for authenticated requests.
    """
    from app.core.security import create_access_token

    token = create_access_token(
        data={"sub": str(user.id), "tid": user.tenant_id},
        token_version=user.token_version
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def login_payload(user):
    return {"email": user.email, "password": DEFAULT_PASSWORD, "tenant_id": user.tenant_id}
