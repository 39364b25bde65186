"""Integration tests for admin operations.

Tests admin-only functionality including:
- The permission gate on /api/admin
- User management and role assignment
- Role, permission and module catalogue
- Organization rules
"""

import pytest
from fastapi.testclient import TestClient

from portal import app as app_module
from portal.service.runtime import get_runtime
from portal.storage.seed import ADMIN_PERMISSION


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _create_user(client, username, role_ids, password="s3cret!"):
    runtime = get_runtime()
    user = runtime.store.create_user(username, f"{username}@example.com", runtime.passwords.hash(password))
    runtime.store.verify_user_email(user.id)
    runtime.store.set_user_roles(user.id, role_ids)
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    return {
        "user": user,
        "session": data,
        "headers": {"Authorization": f"Bearer {data['accessToken']}"},
    }


@pytest.fixture
def admin_user(client):
    """Create an admin user and return credentials."""
    return _create_user(client, "yonetici", [4])


@pytest.fixture
def regular_user(client):
    """Create a regular employee and return credentials."""
    return _create_user(client, "calisan", [1])


class TestPermissionGate:
    def test_requires_authentication(self, client):
        response = client.get("/api/admin/users")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_employee_is_forbidden(self, client, regular_user):
        response = client.get("/api/admin/users", headers=regular_user["headers"])
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "forbidden"
        assert error["details"] == {"required": ADMIN_PERMISSION}

    def test_admin_is_admitted(self, client, admin_user):
        assert client.get("/api/admin/roles", headers=admin_user["headers"]).status_code == 200


class TestAdminUserManagement:
    def test_list_and_get(self, client, admin_user, regular_user):
        response = client.get("/api/admin/users", headers=admin_user["headers"])
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["count"] == 2
        assert {u["username"] for u in data["items"]} == {"yonetici", "calisan"}

        one = client.get("/api/admin/users/calisan", headers=admin_user["headers"]).json()["data"]
        assert one["roles"] == ["CALISAN"]
        assert one["isEmailVerified"] is True
        assert "passwordHash" not in one

    def test_unknown_user(self, client, admin_user):
        response = client.get("/api/admin/users/nobody", headers=admin_user["headers"])
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_role_change_applies_after_refresh(self, client, admin_user, regular_user):
        response = client.put(
            "/api/admin/users/calisan/roles",
            json={"roleIds": [1, 4]},
            headers=admin_user["headers"],
        )
        assert response.status_code == 200, response.text
        assert response.json()["data"]["roles"] == ["ADMIN", "CALISAN"]

        # the old access token still carries the old claims
        stale = client.get("/api/admin/roles", headers=regular_user["headers"])
        assert stale.status_code == 403

        refreshed = client.post(
            "/api/auth/refresh-token", json={"refreshToken": regular_user["session"]["refreshToken"]}
        ).json()["data"]
        assert ADMIN_PERMISSION in refreshed["permissions"]
        fresh = client.get(
            "/api/admin/roles", headers={"Authorization": f"Bearer {refreshed['accessToken']}"}
        )
        assert fresh.status_code == 200

    def test_unknown_role_rejected(self, client, admin_user, regular_user):
        response = client.put(
            "/api/admin/users/calisan/roles",
            json={"roleIds": [42]},
            headers=admin_user["headers"],
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_deactivate_revokes_sessions(self, client, admin_user, regular_user):
        response = client.delete("/api/admin/users/calisan", headers=admin_user["headers"])
        assert response.status_code == 200
        assert response.json()["data"]["sessionsRevoked"] == 1

        refresh = client.post(
            "/api/auth/refresh-token", json={"refreshToken": regular_user["session"]["refreshToken"]}
        )
        assert refresh.status_code == 401
        login = client.post("/api/auth/login", json={"username": "calisan", "password": "s3cret!"})
        assert login.status_code == 401

    def test_cannot_deactivate_self(self, client, admin_user):
        response = client.delete("/api/admin/users/yonetici", headers=admin_user["headers"])
        assert response.status_code == 400


class TestCatalogue:
    def test_roles(self, client, admin_user):
        roles = client.get("/api/admin/roles", headers=admin_user["headers"]).json()["data"]
        assert [r["code"] for r in roles] == ["CALISAN", "IK_YONETICI", "BUTCE_YONETICI", "ADMIN"]
        assert roles[0]["permissionIds"] == [1, 3, 6]
        assert client.get("/api/admin/roles/99", headers=admin_user["headers"]).status_code == 404

    def test_set_role_permissions(self, client, admin_user):
        response = client.put(
            "/api/admin/roles/1/permissions",
            json={"permissionIds": [1, 2, 2]},
            headers=admin_user["headers"],
        )
        assert response.status_code == 200
        assert response.json()["data"]["permissionIds"] == [1, 2]

        bad = client.put(
            "/api/admin/roles/1/permissions",
            json={"permissionIds": [999]},
            headers=admin_user["headers"],
        )
        assert bad.status_code == 400

    def test_permissions_carry_module_and_level(self, client, admin_user):
        items = client.get("/api/admin/permissions", headers=admin_user["headers"]).json()["data"]
        admin = next(p for p in items if p["code"] == ADMIN_PERMISSION)
        assert admin["moduleCode"] == "ADMIN"
        assert admin["level"] == 4

    def test_permission_levels(self, client, admin_user):
        levels = client.get("/api/admin/permission-levels", headers=admin_user["headers"]).json()["data"]
        assert [lv["level"] for lv in levels] == [1, 2, 3, 4]

    def test_modules_nest_sub_modules(self, client, admin_user):
        modules = client.get("/api/admin/modules", headers=admin_user["headers"]).json()["data"]
        ik = next(m for m in modules if m["code"] == "IK")
        assert [s["code"] for s in ik["subModules"]] == ["IK.Bordro", "IK.Izin"]


class TestOrganizationRules:
    def test_crud(self, client, admin_user):
        headers = admin_user["headers"]
        created = client.post(
            "/api/admin/organization",
            json={
                "emailPattern": "%@HR.example.com",
                "departmentCode": "HR",
                "departmentName": "İnsan Kaynakları",
                "defaultRoleId": 2,
                "priority": 10,
            },
            headers=headers,
        )
        assert created.status_code == 200, created.text
        rule = created.json()["data"]
        assert rule["emailPattern"] == "%@hr.example.com"

        updated = client.put(f"/api/admin/organization/{rule['id']}", json={"priority": 20}, headers=headers)
        assert updated.json()["data"]["priority"] == 20

        listed = client.get("/api/admin/organization", headers=headers).json()["data"]
        assert [r["id"] for r in listed] == [rule["id"]]

        deleted = client.delete(f"/api/admin/organization/{rule['id']}", headers=headers)
        assert deleted.json()["data"] == {"id": rule["id"], "isActive": False}

    def test_new_rule_drives_default_role(self, client, admin_user):
        client.post(
            "/api/admin/organization",
            json={"emailPattern": "%@example.com", "defaultRoleId": 3, "priority": 1},
            headers=admin_user["headers"],
        )
        client.post(
            "/api/auth/register",
            json={"username": "yeni", "email": "yeni@example.com", "password": "s3cret!"},
        )
        store = get_runtime().store
        token = next(t.token for t in store.verification_tokens.values() if t.email == "yeni@example.com")
        verified = client.post("/api/auth/verify-email", json={"token": token})
        assert verified.status_code == 200, verified.text
        assert verified.json()["data"]["authData"]["roles"] == ["BUTCE_YONETICI"]

    def test_missing_rule(self, client, admin_user):
        headers = admin_user["headers"]
        assert client.put("/api/admin/organization/99", json={"priority": 1}, headers=headers).status_code == 404
        assert client.delete("/api/admin/organization/99", headers=headers).status_code == 404

    def test_invalid_role(self, client, admin_user):
        response = client.post(
            "/api/admin/organization",
            json={"emailPattern": "%", "defaultRoleId": 42},
            headers=admin_user["headers"],
        )
        assert response.status_code == 400
