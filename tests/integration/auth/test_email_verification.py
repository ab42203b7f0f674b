"""
Integration tests for email verification.

Tests:
- POST /api/auth/verify-email/request
- POST /api/auth/verify-email
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditAction, AuditLog
from app.models.user import UserStatus
from tests.factories import UserFactory

REQUEST_URL = "/api/auth/verify-email/request"
VERIFY_URL = "/api/auth/verify-email"
LOGIN_URL = "/api/auth/login"


@pytest.fixture
async def unverified_user(db_session: AsyncSession, tenant):
    user = await UserFactory.create_async(db_session, tenant_id=tenant.id, email_verified_at=None)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.mark.asyncio
class TestEmailVerification:

    async def test_verification_unblocks_login(self, client: AsyncClient, unverified_user, delivery):
        payload = {"email": unverified_user.email, "password": "P@ssw0rd1", "tenant_id": unverified_user.tenant_id}
        blocked = await client.post(LOGIN_URL, json=payload)
        assert blocked.json()["code"] == "email_not_verified"

        requested = await client.post(
            REQUEST_URL, json={"email": unverified_user.email, "tenant_id": unverified_user.tenant_id}
        )
        assert requested.status_code == 202
        verified = await client.post(VERIFY_URL, json={"token": delivery.last_token(unverified_user.email)})

        assert verified.status_code == 200
        assert verified.json()["message"] == "Email verified"
        assert (await client.post(LOGIN_URL, json=payload)).status_code == 200

    async def test_sets_verified_timestamp(self, auth_service, unverified_user, delivery, db_session: AsyncSession):
        await auth_service.request_email_verification(unverified_user.email, unverified_user.tenant_id)

        await auth_service.verify_email(delivery.last_token(unverified_user.email))

        await db_session.refresh(unverified_user)
        assert unverified_user.email_verified_at is not None

    async def test_writes_audit_entries(self, auth_service, unverified_user, delivery, session_factory):
        await auth_service.request_email_verification(unverified_user.email, unverified_user.tenant_id)
        await auth_service.verify_email(delivery.last_token(unverified_user.email), ip_address="10.0.0.1")

        async with session_factory() as db:
            actions = (await db.execute(
                select(AuditLog.action).filter(AuditLog.user_id == unverified_user.id).order_by(AuditLog.id)
            )).scalars().all()

        assert actions == [AuditAction.EMAIL_VERIFICATION_SENT.value, AuditAction.EMAIL_VERIFIED.value]

    async def test_message_states_lifetime(self, client: AsyncClient, unverified_user, delivery):
        await client.post(REQUEST_URL, json={"email": unverified_user.email, "tenant_id": unverified_user.tenant_id})

        assert "expires in 72 hours" in delivery.sent[-1][2]

    async def test_already_verified_gets_no_email(self, client: AsyncClient, user, delivery):
        response = await client.post(REQUEST_URL, json={"email": user.email, "tenant_id": user.tenant_id})

        assert response.status_code == 202
        assert delivery.sent == []

    async def test_unknown_email_same_answer(self, client: AsyncClient, tenant, delivery):
        response = await client.post(REQUEST_URL, json={"email": "nobody@school.edu", "tenant_id": tenant.id})

        assert response.status_code == 202
        assert response.json()["message"] == "If the account exists, an email has been sent"
        assert delivery.sent == []

    async def test_inactive_account_gets_no_email(self, client: AsyncClient, db_session: AsyncSession, tenant, delivery):
        user = await UserFactory.create_async(
            db_session, tenant_id=tenant.id, email_verified_at=None, status=UserStatus.INACTIVE.value
        )
        await db_session.commit()

        response = await client.post(REQUEST_URL, json={"email": user.email, "tenant_id": tenant.id})

        assert response.status_code == 202
        assert delivery.sent == []

    async def test_token_is_single_use(self, client: AsyncClient, unverified_user, delivery):
        await client.post(REQUEST_URL, json={"email": unverified_user.email, "tenant_id": unverified_user.tenant_id})
        token = delivery.last_token(unverified_user.email)
        await client.post(VERIFY_URL, json={"token": token})

        response = await client.post(VERIFY_URL, json={"token": token})

        assert response.status_code == 400
        assert response.json()["code"] == "verification_token_used"

    async def test_newer_request_supersedes_older_token(self, client: AsyncClient, unverified_user, delivery):
        body = {"email": unverified_user.email, "tenant_id": unverified_user.tenant_id}
        await client.post(REQUEST_URL, json=body)
        first = delivery.last_token(unverified_user.email)
        await client.post(REQUEST_URL, json=body)

        response = await client.post(VERIFY_URL, json={"token": first})

        assert response.status_code == 400
        assert response.json()["code"] == "verification_token_expired"

    async def test_reset_token_cannot_verify_email(self, client: AsyncClient, user, delivery):
        await client.post("/api/auth/forgot-password", json={"email": user.email, "tenant_id": user.tenant_id})

        response = await client.post(VERIFY_URL, json={"token": delivery.last_token(user.email)})

        assert response.status_code == 400
        assert response.json()["code"] == "verification_token_not_found"

    async def test_unknown_token(self, client: AsyncClient):
        response = await client.post(VERIFY_URL, json={"token": "unknown"})

        assert response.status_code == 400
        assert response.json()["code"] == "verification_token_not_found"
