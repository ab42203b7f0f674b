"""
Integration tests for session termination and token versioning.

Tests:
- POST /api/auth/logout
- POST /api/auth/logout-all
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import create_access_token
from app.models.refresh_token import RefreshToken

LOGIN_URL = "/api/auth/login"


@pytest.mark.asyncio
class TestLogout:
    """Test POST /api/auth/logout (single session)."""

    async def test_logout_revokes_presented_token(self, client: AsyncClient, user, token_service):
        pair = await token_service.issue(user)

        response = await client.post("/api/auth/logout", json={"refresh_token": pair.refresh_token})

        assert response.status_code == 200
        assert response.json()["message"] == "Logout successful"

        refreshed = await client.post("/api/auth/refresh", json={"refresh_token": pair.refresh_token})
        assert refreshed.status_code == 401
        assert refreshed.json()["code"] == "refresh_token_revoked"

    async def test_logout_leaves_other_sessions(self, client: AsyncClient, user, token_service):
        """Logging out on one device keeps the others signed in."""
        phone = await token_service.issue(user, user_agent="phone")
        laptop = await token_service.issue(user, user_agent="laptop")

        await client.post("/api/auth/logout", json={"refresh_token": phone.refresh_token})

        response = await client.post("/api/auth/refresh", json={"refresh_token": laptop.refresh_token})
        assert response.status_code == 200

    async def test_logout_unknown_token_same_answer(self, client: AsyncClient):
        response = await client.post("/api/auth/logout", json={"refresh_token": "unknown"})

        assert response.status_code == 200
        assert response.json()["message"] == "Logout successful"

    async def test_logout_twice(self, auth_service, token_service, user):
        pair = await token_service.issue(user)

        assert await auth_service.logout(pair.refresh_token, user=user) is True
        assert await auth_service.logout(pair.refresh_token, user=user) is False


@pytest.mark.asyncio
class TestLogoutAll:
    """Test POST /api/auth/logout-all and token_version invalidation."""

    async def test_logout_all_revokes_every_session(
        self, client: AsyncClient, user, auth_headers, token_service, db_session: AsyncSession
    ):
        for agent in ("phone", "laptop", "tablet"):
            await token_service.issue(user, user_agent=agent)

        response = await client.post("/api/auth/logout-all", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["revoked_sessions"] == 3

        active = (await db_session.execute(
            select(func.count(RefreshToken.id)).filter(
                RefreshToken.user_id == user.id, RefreshToken.revoked_at.is_(None)
            )
        )).scalar_one()
        assert active == 0

    async def test_logout_all_increments_token_version(
        self, client: AsyncClient, user, auth_headers, db_session: AsyncSession
    ):
        initial_version = user.token_version

        await client.post("/api/auth/logout-all", headers=auth_headers)

        await db_session.refresh(user)
        assert user.token_version == initial_version + 1

    async def test_old_access_token_invalid_after_logout_all(self, client: AsyncClient, user, auth_headers):
        assert (await client.get("/api/auth/me", headers=auth_headers)).status_code == 200

        await client.post("/api/auth/logout-all", headers=auth_headers)

        response = await client.get("/api/auth/me", headers=auth_headers)
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_token"

    async def test_new_login_after_logout_all_works(self, client: AsyncClient, user, auth_headers, login_payload):
        await client.post("/api/auth/logout-all", headers=auth_headers)

        login = await client.post(LOGIN_URL, json=login_payload)
        assert login.status_code == 200

        response = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {login.json()['access_token']}"}
        )
        assert response.status_code == 200

    async def test_token_with_wrong_version_rejected(self, client: AsyncClient, user):
        token = create_access_token(
            {"sub": str(user.id), "tid": user.tenant_id}, token_version=user.token_version + 5
        )

        response = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    async def test_token_without_version_rejected(self, client: AsyncClient, user):
        from jose import jwt

        from app.core.config import settings
        from app.core.security import ALGORITHM, SECRET_KEY

        token = jwt.encode(
            {"sub": str(user.id), "type": "access", "iss": settings.JWT_ISSUER}, SECRET_KEY, algorithm=ALGORITHM
        )

        response = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    async def test_logout_all_requires_auth(self, client: AsyncClient):
        response = await client.post("/api/auth/logout-all")

        assert response.status_code == 401
