"""Integration tests for the management routes (people, services, roles, permissions)."""

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service.runtime import get_runtime

PASSWORD = "AdminPassword1"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def admin_headers(client):
    get_runtime().directory.create_person("admin", PASSWORD, "Admin", "00000001")
    response = client.post("/auth/login", json={"username": "admin", "password": PASSWORD})
    return {"token": response.json()["data"]["token"]}


def _create(client, headers, path, body):
    response = client.post(path, headers=headers, json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestAccess:
    def test_management_routes_require_token(self, client):
        for path in ("/users", "/services", "/roles", "/permissions"):
            response = client.get(path)
            assert response.status_code == 401

    def test_management_routes_do_not_renew(self, client, admin_headers, clock):
        runtime = get_runtime()
        token = admin_headers["token"]
        before = runtime.tokens.store.get_token(token).last_activity
        # well inside the renewal window
        clock.now = before + 280
        runtime.tokens._clock = clock
        assert client.get("/users", headers=admin_headers).status_code == 200
        assert runtime.tokens.store.get_token(token).last_activity == before


class TestPeople:
    def test_create_get_update_person(self, client, admin_headers):
        person = _create(
            client,
            admin_headers,
            "/users",
            {
                "username": "ana",
                "password": "AnaPassword1",
                "name": "Ana",
                "document_number": "12345678",
            },
        )
        assert "password" not in person and "password_hash" not in person
        assert person["person_type"] == "N"

        fetched = client.get(f"/users/{person['id']}", headers=admin_headers).json()["data"]
        assert fetched["username"] == "ana"

        updated = client.put(
            f"/users/{person['id']}", headers=admin_headers, json={"name": "Ana Maria"}
        ).json()["data"]
        assert updated["name"] == "Ana Maria"

        listing = client.get("/users", headers=admin_headers).json()["data"]["items"]
        assert {p["username"] for p in listing} == {"admin", "ana"}

    def test_duplicate_username_conflicts(self, client, admin_headers):
        response = client.post(
            "/users",
            headers=admin_headers,
            json={
                "username": "admin",
                "password": "Whatever123",
                "name": "Dup",
                "document_number": "999",
            },
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_empty_update_is_rejected(self, client, admin_headers):
        response = client.put("/users/1", headers=admin_headers, json={})
        assert response.status_code == 400

    def test_unknown_person_is_not_found(self, client, admin_headers):
        response = client.get("/users/999", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_delete_person_revokes_their_tokens(self, client, admin_headers):
        person = _create(
            client,
            admin_headers,
            "/users",
            {
                "username": "ana",
                "password": "AnaPassword1",
                "name": "Ana",
                "document_number": "12345678",
            },
        )
        ana_token = client.post(
            "/auth/login", json={"username": "ana", "password": "AnaPassword1"}
        ).json()["data"]["token"]

        response = client.delete(f"/users/{person['id']}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["data"]["tokens_revoked"] == 1
        assert client.get("/auth/profile", headers={"token": ana_token}).status_code == 401
        assert client.get(f"/users/{person['id']}", headers=admin_headers).status_code == 404


class TestAssignmentGraph:
    @pytest.fixture
    def graph(self, client, admin_headers):
        service = _create(client, admin_headers, "/services", {"name": "billing"})
        role = _create(client, admin_headers, "/roles", {"name": "clerk"})
        permission = _create(client, admin_headers, "/permissions", {"name": "invoice.read"})
        person_id = get_runtime().store.get_person_by_username("admin").id
        for path, body in (
            ("/role-permissions", {"role_id": role["id"], "permission_id": permission["id"]}),
            ("/service-roles", {"service_id": service["id"], "role_id": role["id"]}),
            (
                "/person-service-roles",
                {"person_id": person_id, "service_id": service["id"], "role_id": role["id"]},
            ),
        ):
            assert client.post(path, headers=admin_headers, json=body).status_code == 200
        return {"service": service, "role": role, "permission": permission, "person_id": person_id}

    def _check(self, client, headers, graph, name="invoice.read"):
        response = client.get(
            "/check-permission",
            headers=headers,
            params={
                "person_id": graph["person_id"],
                "service_id": graph["service"]["id"],
                "permission_name": name,
            },
        )
        assert response.status_code == 200
        return response.json()["data"]["has_permission"]

    def test_listing_routes(self, client, admin_headers, graph):
        sid, rid, pid = graph["service"]["id"], graph["role"]["id"], graph["person_id"]
        roles = client.get(f"/services/{sid}/roles", headers=admin_headers).json()["data"]
        assert [r["name"] for r in roles["items"]] == ["clerk"]
        perms = client.get(f"/roles/{rid}/permissions", headers=admin_headers).json()["data"]
        assert [p["name"] for p in perms["items"]] == ["invoice.read"]
        mine = client.get(
            f"/people/{pid}/services/{sid}/roles", headers=admin_headers
        ).json()["data"]
        assert [r["name"] for r in mine["items"]] == ["clerk"]
        people = client.get(
            f"/services/{sid}/roles/{rid}/people", headers=admin_headers
        ).json()["data"]
        assert [p["username"] for p in people["items"]] == ["admin"]
        services = client.get(f"/people/{pid}/services", headers=admin_headers).json()["data"]
        assert [s["name"] for s in services["items"]] == ["billing"]

    def test_check_permission_is_live(self, client, admin_headers, graph):
        assert self._check(client, admin_headers, graph) is True
        assert self._check(client, admin_headers, graph, "invoice.delete") is False

        response = client.request(
            "DELETE",
            "/role-permissions",
            headers=admin_headers,
            json={"role_id": graph["role"]["id"], "permission_id": graph["permission"]["id"]},
        )
        assert response.json()["data"]["removed"] is True
        assert self._check(client, admin_headers, graph) is False

    def test_deleting_service_disables_it(self, client, admin_headers, graph):
        sid = graph["service"]["id"]
        response = client.delete(f"/services/{sid}", headers=admin_headers)
        assert response.json()["data"] == {"disabled": True, "service_id": sid}
        assert self._check(client, admin_headers, graph) is False
        assert client.get("/services", headers=admin_headers).json()["data"]["items"] == []
        inactive = client.get(
            "/services", headers=admin_headers, params={"include_inactive": True}
        ).json()["data"]["items"]
        assert inactive[0]["status"] is False

    def test_assigning_unknown_role_is_not_found(self, client, admin_headers, graph):
        response = client.post(
            "/service-roles",
            headers=admin_headers,
            json={"service_id": graph["service"]["id"], "role_id": 999},
        )
        assert response.status_code == 404

    def test_role_and_permission_rename_and_delete(self, client, admin_headers, graph):
        rid, perm_id = graph["role"]["id"], graph["permission"]["id"]
        renamed = client.put(
            f"/roles/{rid}", headers=admin_headers, json={"name": "auditor"}
        ).json()["data"]
        assert renamed["name"] == "auditor"
        renamed = client.put(
            f"/permissions/{perm_id}", headers=admin_headers, json={"name": "invoice.view"}
        ).json()["data"]
        assert renamed["name"] == "invoice.view"

        assert client.delete(f"/permissions/{perm_id}", headers=admin_headers).status_code == 200
        assert client.delete(f"/roles/{rid}", headers=admin_headers).status_code == 200
        assert client.get(f"/roles/{rid}", headers=admin_headers).status_code == 404
        assert client.get("/permissions", headers=admin_headers).json()["data"]["items"] == []
