"""Integration tests for the Admin-only role pages."""

import pytest
from fastapi.testclient import TestClient

from storekeep import app as app_module
from storekeep.service.runtime import get_runtime

PASSWORD = "Passw0rd!"


@pytest.fixture
def client():
    return TestClient(app_module.app, follow_redirects=False)


def _sign_in(client, username):
    response = client.post(
        "/Auth/ValidateLogin", json={"username": username, "password": PASSWORD}
    )
    assert response.status_code == 303, response.text
    token = client.get("/").json()["data"]["antiforgery_token"]
    return {"X-CSRF-Token": token}


@pytest.fixture
def admin_headers(client, make_user):
    make_user("boss", roles=["Admin"])
    return _sign_in(client, "boss")


def _role_id(name):
    role = get_runtime().identity.find_role_by_name(name)
    assert role is not None
    return role.id


class TestRoleAccess:
    def test_anonymous_redirected_to_login(self, client):
        response = client.get("/Roles")
        assert response.status_code == 302
        assert response.headers["location"] == "/Auth/Login?returnUrl=%2FRoles"

    def test_manager_is_forbidden(self, client, make_user):
        make_user("mgr", roles=["Manager"])
        headers = _sign_in(client, "mgr")
        assert client.get("/Roles").status_code == 403
        response = client.post("/Roles/Create", json={"name": "Sneaky"}, headers=headers)
        assert response.status_code == 403
        assert get_runtime().identity.find_role_by_name("Sneaky") is None

    def test_admin_dashboard_forbidden_for_manager(self, client, make_user):
        make_user("mgr", roles=["Manager"])
        _sign_in(client, "mgr")
        response = client.get("/AdminDashboard/Index")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_revoked_admin_loses_access_immediately(self, client, admin_headers):
        assert client.get("/Roles").status_code == 200
        runtime = get_runtime()
        runtime.identity.delete_role(runtime.identity.find_role_by_name("Admin"))
        assert client.get("/Roles").status_code == 403

    def test_deactivated_admin_loses_access_immediately(self, client, admin_headers):
        assert client.get("/Roles").status_code == 200
        runtime = get_runtime()
        runtime.identity.set_active(runtime.identity.find_by_name("boss"), False)
        response = client.get("/Roles")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        response = client.post("/Roles/Create", json={"name": "Ghost"}, headers=admin_headers)
        assert response.status_code == 403
        assert runtime.identity.find_role_by_name("Ghost") is None


class TestRoleCrud:
    def test_index_lists_roles(self, client, admin_headers):
        body = client.get("/Roles").json()
        assert body["data"]["view"] == "Roles/Index"
        assert [role["name"] for role in body["data"]["model"]["roles"]] == ["Admin"]

    def test_create_requires_antiforgery_token(self, client, admin_headers):
        response = client.post("/Roles/Create", json={"name": "Manager"})
        assert response.status_code == 403
        assert get_runtime().identity.find_role_by_name("Manager") is None

    def test_create(self, client, admin_headers):
        response = client.post("/Roles/Create", json={"name": "Manager"}, headers=admin_headers)
        assert response.status_code == 303
        assert response.headers["location"] == "/Roles"
        names = [r["name"] for r in client.get("/Roles").json()["data"]["model"]["roles"]]
        assert names == ["Admin", "Manager"]

    def test_create_duplicate_rerenders(self, client, admin_headers):
        response = client.post("/Roles/Create", json={"name": "Admin"}, headers=admin_headers)
        assert response.status_code == 400
        body = response.json()
        assert body["data"]["view"] == "Roles/Create"
        assert body["error"]["message"] == "Role name 'Admin' is already taken."

    def test_create_empty_name(self, client, admin_headers):
        response = client.post("/Roles/Create", json={}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Role name '' is invalid."

    def test_edit(self, client, admin_headers):
        client.post("/Roles/Create", json={"name": "Managers"}, headers=admin_headers)
        role_id = _role_id("Managers")
        page = client.get(f"/Roles/Edit/{role_id}")
        assert page.json()["data"]["model"] == {"id": role_id, "name": "Managers"}

        response = client.post(
            f"/Roles/Edit/{role_id}",
            json={"id": role_id, "name": "Manager"},
            headers=admin_headers,
        )
        assert response.status_code == 303
        assert get_runtime().identity.find_role_by_id(role_id).name == "Manager"

    def test_edit_id_mismatch_is_not_found(self, client, admin_headers):
        role_id = _role_id("Admin")
        response = client.post(
            f"/Roles/Edit/{role_id}",
            json={"id": "other", "name": "Renamed"},
            headers=admin_headers,
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_edit_unknown_role(self, client, admin_headers):
        assert client.get("/Roles/Edit/missing").status_code == 404

    def test_delete(self, client, admin_headers):
        client.post("/Roles/Create", json={"name": "Temp"}, headers=admin_headers)
        role_id = _role_id("Temp")
        confirm = client.get(f"/Roles/Delete/{role_id}")
        assert confirm.json()["data"]["model"]["name"] == "Temp"

        response = client.post(f"/Roles/Delete/{role_id}", headers=admin_headers)
        assert response.status_code == 303
        assert get_runtime().identity.find_role_by_id(role_id) is None
        assert client.post(f"/Roles/Delete/{role_id}", headers=admin_headers).status_code == 404
