"""
End-to-end test for complete 2FA setup and usage flow.

Tests the full 2FA journey from setup to login.
"""

import pyotp
import pytest
from httpx import AsyncClient


@pytest.mark.e2e
@pytest.mark.asyncio
class TestTwoFactorAuthFlow:
    """Complete 2FA setup and login flow."""

    async def test_complete_2fa_setup_flow(self, client: AsyncClient, user, login_payload):
        """
        Test complete 2FA setup and usage:
        1. Login with password
        2. Setup 2FA (get secret and QR code)
        3. Verify TOTP and enable 2FA
        4. Logout
        5. Login with password, then TOTP
        6. Verify access works
        7. Login with a backup code, then refresh the session
        """
        # Step 1: Login
        login_response = await client.post("/api/auth/login", json=login_payload)

        assert login_response.status_code == 200
        tokens = login_response.json()
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        # Step 2: Setup 2FA
        setup_response = await client.post("/api/auth/2fa/setup", headers=headers)

        assert setup_response.status_code == 200
        secret = setup_response.json()["secret"]
        assert setup_response.json()["qr_code"].startswith("data:image/png;base64,")

        # Step 3: Verify TOTP and enable 2FA
        verify_response = await client.post(
            "/api/auth/2fa/verify", headers=headers, json={"code": pyotp.TOTP(secret).now()}
        )

        assert verify_response.status_code == 200
        backup_codes = verify_response.json()["backup_codes"]
        assert len(backup_codes) == 8

        # Step 4: Logout
        logout_response = await client.post("/api/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert logout_response.status_code == 200

        # Step 5: Login requires the second factor now
        step_one = await client.post("/api/auth/login", json=login_payload)

        assert step_one.status_code == 200
        assert step_one.json()["requires_two_factor"] is True
        assert "access_token" not in step_one.json()

        step_two = await client.post(
            "/api/auth/2fa/validate",
            json={"partial_token": step_one.json()["partial_token"], "code": pyotp.TOTP(secret).now()},
        )

        assert step_two.status_code == 200
        session = step_two.json()

        # Step 6: Verify access works
        me_response = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {session['access_token']}"}
        )

        assert me_response.status_code == 200
        assert me_response.json()["two_factor_enabled"] is True

        # Step 7: Backup code login, then rotate
        step_one = await client.post("/api/auth/login", json=login_payload)
        backup_login = await client.post(
            "/api/auth/2fa/validate",
            json={"partial_token": step_one.json()["partial_token"], "code": backup_codes[0]},
        )

        assert backup_login.status_code == 200

        refresh_response = await client.post(
            "/api/auth/refresh", json={"refresh_token": backup_login.json()["refresh_token"]}
        )

        assert refresh_response.status_code == 200

        status_response = await client.get(
            "/api/auth/2fa/status",
            headers={"Authorization": f"Bearer {refresh_response.json()['access_token']}"},
        )

        assert status_response.json()["backup_codes_remaining"] == 7

    async def test_2fa_disable_flow(self, client: AsyncClient, user, auth_headers, login_payload):
        """
        Enable 2FA, disable it with the password, then log in with the
        password alone.
        """
        secret = (await client.post("/api/auth/2fa/setup", headers=auth_headers)).json()["secret"]
        await client.post("/api/auth/2fa/verify", headers=auth_headers, json={"code": pyotp.TOTP(secret).now()})

        disable_response = await client.post(
            "/api/auth/2fa/disable", headers=auth_headers, json={"password": login_payload["password"]}
        )
        assert disable_response.status_code == 200

        login_response = await client.post("/api/auth/login", json=login_payload)

        assert login_response.status_code == 200
        assert login_response.json()["requires_two_factor"] is False
        assert login_response.json()["access_token"]
