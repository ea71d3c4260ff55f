"""Tests for the two-factor HTTP endpoints."""

import pytest
from httpx import AsyncClient

from secondfactor.auth.middleware import (
    get_pending_user_id,
    get_session_user_id_optional,
    require_admin,
)
from secondfactor.auth.totp import compute_code, decode_secret
from secondfactor.main import app
from conftest import TEST_USER_ID


def totp_for(secret: str, clock) -> str:
    return compute_code(decode_secret(secret), clock())


async def enroll(client: AsyncClient, clock) -> dict:
    """Run setup and enable through the API, returning the setup payload."""
    response = await client.post("/api/2fa/setup")
    assert response.status_code == 200
    data = response.json()
    response = await client.post(
        "/api/2fa/enable", json={"code": totp_for(data["secret"], clock)}
    )
    assert response.status_code == 200
    # The confirming code is spent; move on to a fresh one
    clock.advance(seconds=30)
    return data


@pytest.fixture
def pending_login():
    """Pretend the primary login succeeded and the second factor is outstanding."""
    app.dependency_overrides[get_pending_user_id] = lambda: TEST_USER_ID
    yield
    app.dependency_overrides.pop(get_pending_user_id, None)


@pytest.mark.integration
class TestStatus:
    """Tests for GET /api/2fa/status."""

    async def test_status_not_enrolled(self, client: AsyncClient):
        response = await client.get("/api/2fa/status")
        assert response.status_code == 200
        data = response.json()
        assert data["enabled"] is False
        assert data["backup_codes_remaining"] == 0
        assert data["pending_setup"] is False

    async def test_status_requires_login(self, client: AsyncClient):
        app.dependency_overrides[get_session_user_id_optional] = lambda: None
        response = await client.get("/api/2fa/status")
        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"

    async def test_status_never_leaks_secret(self, client: AsyncClient, clock):
        data = await enroll(client, clock)
        body = (await client.get("/api/2fa/status")).text
        assert data["secret"] not in body
        for code in data["backup_codes"]:
            assert code not in body


@pytest.mark.integration
class TestSetupAndEnable:
    """Tests for POST /api/2fa/setup and /api/2fa/enable."""

    async def test_setup_response_structure(self, client: AsyncClient):
        response = await client.post(
            "/api/2fa/setup", json={"account_label": "alice@example.com"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["provisioning_uri"].startswith("otpauth://totp/SecondFactor:alice%40example.com")
        assert "<svg" in data["qr_code_svg"].lower()
        assert len(data["backup_codes"]) == 10
        assert data["warning"]

    async def test_happy_path(self, client: AsyncClient, clock):
        await enroll(client, clock)
        data = (await client.get("/api/2fa/status")).json()
        assert data["enabled"] is True
        assert data["backup_codes_remaining"] == 10

    async def test_enable_wrong_code(self, client: AsyncClient, clock):
        setup = (await client.post("/api/2fa/setup")).json()
        good = totp_for(setup["secret"], clock)
        response = await client.post(
            "/api/2fa/enable", json={"code": f"{(int(good) + 1) % 1000000:06d}"}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid code"

    async def test_enable_expired_looks_like_invalid_code(self, client: AsyncClient, clock):
        """Expiry is not revealed to the caller."""
        setup = (await client.post("/api/2fa/setup")).json()
        clock.advance(minutes=11)
        response = await client.post(
            "/api/2fa/enable", json={"code": totp_for(setup["secret"], clock)}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid code"

    async def test_enable_malformed_looks_like_invalid_code(self, client: AsyncClient):
        await client.post("/api/2fa/setup")
        response = await client.post("/api/2fa/enable", json={"code": "12ab"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid code"

    async def test_enable_without_setup(self, client: AsyncClient):
        response = await client.post("/api/2fa/enable", json={"code": "123456"})
        assert response.status_code == 400
        assert response.json()["detail"] == "No pending 2FA setup"

    async def test_code_too_long_rejected_by_schema(self, client: AsyncClient):
        response = await client.post("/api/2fa/enable", json={"code": "1" * 40})
        assert response.status_code == 422


@pytest.mark.integration
class TestDisableAndRegenerate:
    """Tests for POST /api/2fa/disable and /api/2fa/backup-codes/regenerate."""

    async def test_disable_with_backup_code(self, client: AsyncClient, clock):
        data = await enroll(client, clock)
        response = await client.post("/api/2fa/disable", json={"code": data["backup_codes"][0]})
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert (await client.get("/api/2fa/status")).json()["enabled"] is False

    async def test_disable_not_enabled(self, client: AsyncClient):
        response = await client.post("/api/2fa/disable", json={"code": "123456"})
        assert response.status_code == 400
        assert response.json()["detail"] == "2FA is not enabled"

    async def test_regenerate(self, client: AsyncClient, clock):
        data = await enroll(client, clock)
        response = await client.post(
            "/api/2fa/backup-codes/regenerate", json={"code": totp_for(data["secret"], clock)}
        )
        assert response.status_code == 200
        new_codes = response.json()["backup_codes"]
        assert len(new_codes) == 10
        assert set(new_codes).isdisjoint(data["backup_codes"])

    async def test_regenerate_rejects_backup_code(self, client: AsyncClient, clock):
        data = await enroll(client, clock)
        response = await client.post(
            "/api/2fa/backup-codes/regenerate", json={"code": data["backup_codes"][0]}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid code"


@pytest.mark.integration
class TestVerifyLogin:
    """Tests for POST /api/2fa/verify-login."""

    async def test_requires_pending_login(self, client: AsyncClient):
        response = await client.post("/api/2fa/verify-login", json={"code": "123456"})
        assert response.status_code == 401

    async def test_totp(self, client: AsyncClient, clock, pending_login):
        data = await enroll(client, clock)
        response = await client.post(
            "/api/2fa/verify-login", json={"code": totp_for(data["secret"], clock)}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["method"] == "totp"
        assert body["warning"] is None

    async def test_backup_code_once(self, client: AsyncClient, clock, pending_login):
        data = await enroll(client, clock)
        code = data["backup_codes"][0]

        response = await client.post("/api/2fa/verify-login", json={"code": code})
        assert response.status_code == 200
        body = response.json()
        assert body["method"] == "backup_code"
        assert body["backup_codes_remaining"] == 9
        assert body["warning"] is None

        response = await client.post("/api/2fa/verify-login", json={"code": code})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid code"

    async def test_low_backup_code_warning(self, client: AsyncClient, clock, pending_login):
        data = await enroll(client, clock)
        for code in data["backup_codes"][:8]:
            response = await client.post("/api/2fa/verify-login", json={"code": code})
            assert response.status_code == 200
        body = response.json()
        assert body["backup_codes_remaining"] == 2
        assert "low on backup codes" in body["warning"]

    async def test_not_enrolled_passes(self, client: AsyncClient, pending_login):
        response = await client.post("/api/2fa/verify-login", json={"code": "000000"})
        assert response.status_code == 200
        assert response.json()["method"] == "none"

    async def test_totp_replay_rejected(self, client: AsyncClient, clock, pending_login):
        data = await enroll(client, clock)
        code = totp_for(data["secret"], clock)
        response = await client.post("/api/2fa/verify-login", json={"code": code})
        assert response.status_code == 200

        response = await client.post("/api/2fa/verify-login", json={"code": code})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid code"

    async def test_setup_while_enabled_still_gates_login(
        self, client: AsyncClient, clock, pending_login
    ):
        """Starting a new setup does not switch the second factor off."""
        data = await enroll(client, clock)
        assert (await client.post("/api/2fa/setup")).status_code == 200

        status = (await client.get("/api/2fa/status")).json()
        assert status["enabled"] is True
        assert status["pending_setup"] is True

        response = await client.post("/api/2fa/verify-login", json={"code": "000000"})
        assert response.status_code == 400
        response = await client.post(
            "/api/2fa/verify-login", json={"code": totp_for(data["secret"], clock)}
        )
        assert response.status_code == 200


@pytest.mark.integration
class TestAuditLog:
    """Tests for GET /api/2fa/audit-log."""

    async def test_records_lifecycle(self, client: AsyncClient, clock):
        data = await enroll(client, clock)
        await client.post("/api/2fa/disable", json={"code": "ZZZZZ-ZZZZZ"})
        await client.post("/api/2fa/disable", json={"code": data["backup_codes"][0]})

        response = await client.get("/api/2fa/audit-log")
        assert response.status_code == 200
        entries = response.json()["entries"]
        actions = [e["action"] for e in entries]
        assert actions == ["disabled", "failed_attempt", "enabled", "setup"]
        assert entries[1]["success"] is False
        assert entries[1]["detail"] == "disable:invalid_code"

    async def test_limit_bounds(self, client: AsyncClient):
        assert (await client.get("/api/2fa/audit-log?limit=0")).status_code == 422
        assert (await client.get("/api/2fa/audit-log?limit=201")).status_code == 422
        assert (await client.get("/api/2fa/audit-log?limit=200")).status_code == 200


@pytest.mark.integration
class TestAdmin:
    """Tests for the admin reset endpoints."""

    async def test_reset_requires_admin(self, client: AsyncClient):
        response = await client.post(f"/api/admin/2fa/{TEST_USER_ID}/reset")
        assert response.status_code == 403

    async def test_reset(self, client: AsyncClient, clock):
        await enroll(client, clock)
        app.dependency_overrides[require_admin] = lambda: None

        response = await client.post(f"/api/admin/2fa/{TEST_USER_ID}/reset")
        assert response.status_code == 200
        assert response.json() == {"success": True, "purged": True}

        data = (await client.get(f"/api/admin/2fa/{TEST_USER_ID}")).json()
        assert data["enabled"] is False
        assert data["backup_codes_remaining"] == 0

    async def test_reset_unknown_user(self, client: AsyncClient):
        app.dependency_overrides[require_admin] = lambda: None
        response = await client.post("/api/admin/2fa/nobody/reset")
        assert response.json()["purged"] is False


@pytest.mark.integration
class TestHealthAndMetrics:
    """Tests for /health and /metrics."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_metrics(self, client: AsyncClient, clock):
        await enroll(client, clock)
        response = await client.get("/metrics")
        assert response.status_code == 200
        body = response.text
        assert 'secondfactor_profiles{state="enabled"} 1.0' in body
        assert 'secondfactor_profiles{state="disabled"} 0.0' in body
        assert "secondfactor_backup_codes_unused 10.0" in body
        assert 'secondfactor_audit_events_last_hour{action="setup",success="true"} 1.0' in body
