"""Integration tests for the token flow over HTTP.

Covers:
- Login with username/password
- Profile lookups with sliding renewal
- Check-token against the issuance snapshot
- Logout idempotency
"""

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service.runtime import get_runtime

PASSWORD = "CorrectHorse9"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def seeded():
    """Person 'ana' with role clerk in billing; clerk grants invoice.read."""
    directory = get_runtime().directory
    person = directory.create_person("ana", PASSWORD, "Ana", "12345678")
    billing = directory.create_service("billing", "invoices")
    clerk = directory.create_role("clerk")
    read = directory.create_permission("invoice.read")
    directory.create_permission("invoice.write")
    directory.assign_permission_to_role(clerk.id, read.id)
    directory.assign_role_to_service(billing.id, clerk.id)
    directory.assign_role_to_person(person.id, billing.id, clerk.id)
    return {"person": person, "service": billing, "role": clerk}


def _login(client, username="ana", password=PASSWORD):
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


class TestLogin:
    def test_login_returns_token_and_snapshot(self, client, seeded):
        data = _login(client)
        assert len(data["token"]) == 64
        assert data["payload"]["user_id"] == seeded["person"].id
        assert data["payload"]["services"]["billing"]["permissions"] == ["invoice.read"]

    @pytest.mark.parametrize(
        "username,password", [("ana", "WrongPassword1"), ("nobody", PASSWORD)]
    )
    def test_bad_credentials_are_indistinguishable(self, client, seeded, username, password):
        response = client.post("/auth/login", json={"username": username, "password": password})
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }

    def test_removed_person_cannot_log_in(self, client, seeded):
        get_runtime().directory.delete_person(seeded["person"].id)
        response = client.post("/auth/login", json={"username": "ana", "password": PASSWORD})
        assert response.status_code == 401

    def test_missing_fields_are_validation_errors(self, client):
        response = client.post("/auth/login", json={"username": "ana"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert all("input" not in item for item in error["details"])


class TestProfile:
    def test_profile_returns_payload(self, client, seeded):
        token = _login(client)["token"]
        response = client.get("/auth/profile", headers={"token": token})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["payload"]["username"] == "ana"
        assert data["renewed"] is False

    def test_profile_renews_near_expiry(self, client, seeded, clock):
        get_runtime().tokens._clock = clock
        login = _login(client)
        clock.advance(280)
        data = client.get("/auth/profile", headers={"token": login["token"]}).json()["data"]
        assert data["renewed"] is True
        assert data["expires_at"] == login["expires_at"] + 280

    def test_expired_and_unknown_tokens_look_the_same(self, client, seeded, clock):
        get_runtime().tokens._clock = clock
        token = _login(client)["token"]
        clock.advance(301)
        expired = client.get("/auth/profile", headers={"token": token})
        unknown = client.get("/auth/profile", headers={"token": "f" * 64})
        missing = client.get("/auth/profile")
        for response in (expired, unknown, missing):
            assert response.status_code == 401
            assert response.json()["error"]["message"] == "invalid or expired token"
            assert response.json()["error"]["details"] is None


class TestCheckToken:
    def test_check_token_without_target(self, client, seeded):
        token = _login(client)["token"]
        response = client.post("/check-token", headers={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["valid"] is True

    def test_granted_permission_by_name_or_id(self, client, seeded):
        token = _login(client)["token"]
        for service in ("billing", seeded["service"].id):
            response = client.post(
                "/check-token",
                headers={"token": token},
                json={"service": service, "permission": "invoice.read"},
            )
            assert response.status_code == 200

    def test_missing_permission_is_forbidden(self, client, seeded):
        token = _login(client)["token"]
        response = client.post(
            "/check-token",
            headers={"token": token},
            json={"service": "billing", "permission": "invoice.write"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["details"] == {
            "permission": "invoice.write",
            "service": "billing",
        }

    def test_permission_without_service_is_rejected(self, client, seeded):
        token = _login(client)["token"]
        response = client.post(
            "/check-token", headers={"token": token}, json={"permission": "invoice.read"}
        )
        assert response.status_code == 400

    def test_grants_apply_to_tokens_issued_afterwards(self, client, seeded):
        """A token keeps the permissions it was issued with until the next login."""
        old_token = _login(client)["token"]
        write = next(
            p for p in get_runtime().directory.list_permissions() if p.name == "invoice.write"
        )
        response = client.post(
            "/role-permissions",
            headers={"token": old_token},
            json={"role_id": seeded["role"].id, "permission_id": write.id},
        )
        assert response.status_code == 200

        target = {"service": "billing", "permission": "invoice.write"}
        stale = client.post("/check-token", headers={"token": old_token}, json=target)
        assert stale.status_code == 403

        new_token = _login(client)["token"]
        fresh = client.post("/check-token", headers={"token": new_token}, json=target)
        assert fresh.status_code == 200

    def test_disabled_service_is_forbidden_for_existing_tokens(self, client, seeded):
        token = _login(client)["token"]
        get_runtime().directory.delete_service(seeded["service"].id)
        target = {"service": "billing", "permission": "invoice.read"}
        response = client.post("/check-token", headers={"token": token}, json=target)
        assert response.status_code == 403
        assert client.post("/check-token", headers={"token": token}).status_code == 200


class TestLogout:
    def test_logout_is_idempotent(self, client, seeded):
        token = _login(client)["token"]
        for _ in range(2):
            response = client.post("/auth/logout", headers={"token": token})
            assert response.status_code == 200
            assert response.json()["data"] == {"status": "logged_out"}
        assert client.get("/auth/profile", headers={"token": token}).status_code == 401

    def test_logout_without_token_succeeds(self, client):
        assert client.post("/auth/logout").status_code == 200
