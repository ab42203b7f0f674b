"""
End-to-end test for account recovery.

Tests a user who locks themselves out and recovers with an emailed reset token.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.e2e
@pytest.mark.asyncio
class TestPasswordResetFlow:
    """Locked out, reset by email, back in."""

    async def test_locked_out_user_recovers(self, client: AsyncClient, user, login_payload, delivery):
        """
        1. Sign in on one device
        2. Lock the account with wrong passwords
        3. Request a reset and set a new password
        4. The old session is gone and the new password works
        """
        # Step 1: Existing session
        session = (await client.post("/api/auth/login", json=login_payload)).json()

        # Step 2: Lock out
        for _ in range(5):
            await client.post("/api/auth/login", json={**login_payload, "password": "WrongPassword1"})
        locked = await client.post("/api/auth/login", json=login_payload)
        assert locked.status_code == 423

        # Step 3: Reset
        forgot = await client.post(
            "/api/auth/forgot-password", json={"email": user.email, "tenant_id": user.tenant_id}
        )
        assert forgot.status_code == 202
        reset = await client.post(
            "/api/auth/reset-password",
            json={"token": delivery.last_token(user.email), "new_password": "Rec0vered-Pass!"},
        )
        assert reset.status_code == 200

        # Step 4: Old session revoked, new password accepted
        stale = await client.post("/api/auth/refresh", json={"refresh_token": session["refresh_token"]})
        assert stale.status_code == 401
        login = await client.post("/api/auth/login", json={**login_payload, "password": "Rec0vered-Pass!"})
        assert login.status_code == 200
        headers = {"Authorization": f"Bearer {login.json()['access_token']}"}
        assert (await client.get("/api/auth/me", headers=headers)).json()["id"] == user.id
