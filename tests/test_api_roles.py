"""Integration tests for api/routes/v1/roles.py and api/routes/v1/devices.py.

Covers:
- Role listing and custom role lifecycle (create, re-grant, delete)
- System roles cannot be deleted
- Assigning a role changes scopes at the next issuance, not before
- Operator session views for another account
- Permission gates on every route
"""

from __future__ import annotations

from conftest import bearer, unique_email

PASSWORD = "member-pass-1"


def _member(client) -> dict:
    email = unique_email("roles")
    client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
    data = resp.json()
    data["email"] = email
    return data


def _role_id(client, admin_token: str, name: str) -> int:
    roles = client.get("/api/v1/roles", headers=bearer(admin_token)).json()
    return next(r["id"] for r in roles if r["name"] == name)


class TestRoleDirectory:
    def test_default_roles_listed(self, api_client) -> None:
        client, admin_token, _ = api_client
        resp = client.get("/api/v1/roles", headers=bearer(admin_token))
        assert resp.status_code == 200
        names = [r["name"] for r in resp.json()]
        assert {"System Admin", "Store Manager", "Staff", "Member"} <= set(names)
        assert all(r["is_system"] for r in resp.json() if r["name"] == "Member")

    def test_member_cannot_view_roles(self, api_client) -> None:
        client, _, _ = api_client
        member = _member(client)
        assert client.get("/api/v1/roles", headers=bearer(member["access_token"])).status_code == 403

    def test_custom_role_lifecycle(self, api_client) -> None:
        client, admin_token, _ = api_client
        headers = bearer(admin_token)

        created = client.post(
            "/api/v1/roles",
            json={"name": "Auditor", "description": "Read-only audit", "permissions": ["system:audit"]},
            headers=headers,
        )
        assert created.status_code == 201
        role = created.json()
        assert role["permissions"] == ["system:audit"]
        assert role["is_system"] is False

        dup = client.post("/api/v1/roles", json={"name": "Auditor"}, headers=headers)
        assert dup.status_code == 409

        updated = client.put(
            f"/api/v1/roles/{role['id']}/permissions",
            json={"permissions": ["system:audit", "analytics:export"]},
            headers=headers,
        )
        assert updated.status_code == 200
        assert set(updated.json()["permissions"]) == {"system:audit", "analytics:export"}

        assert client.delete(f"/api/v1/roles/{role['id']}", headers=headers).status_code == 204
        assert client.delete(f"/api/v1/roles/{role['id']}", headers=headers).status_code == 404

    def test_unknown_permission_tag_is_422(self, api_client) -> None:
        client, admin_token, _ = api_client
        resp = client.post(
            "/api/v1/roles", json={"name": "Broken", "permissions": ["not:a-permission"]}, headers=bearer(admin_token)
        )
        assert resp.status_code == 422

    def test_system_role_cannot_be_deleted(self, api_client) -> None:
        client, admin_token, _ = api_client
        member_role = _role_id(client, admin_token, "Member")
        resp = client.delete(f"/api/v1/roles/{member_role}", headers=bearer(admin_token))
        assert resp.status_code == 400


class TestAssignments:
    def test_assignment_applies_at_next_issuance(self, api_client) -> None:
        """Scopes are fixed in the token: the old token keeps its old scope."""
        client, admin_token, _ = api_client
        member = _member(client)
        user_id = member["user"]["id"]
        staff = _role_id(client, admin_token, "Staff")

        resp = client.put(f"/api/v1/users/{user_id}/roles/{staff}", headers=bearer(admin_token))
        assert resp.status_code == 204

        roles = client.get(f"/api/v1/users/{user_id}/roles", headers=bearer(admin_token)).json()
        assert {r["name"] for r in roles} == {"Member", "Staff"}

        assert client.get("/api/v1/auth/users", headers=bearer(member["access_token"])).status_code == 403
        refreshed = client.post(
            "/api/v1/auth/token", json={"grant_type": "refresh_token", "refresh_token": member["refresh_token"]}
        ).json()
        assert client.get("/api/v1/auth/users", headers=bearer(refreshed["access_token"])).status_code == 200

    def test_assign_is_idempotent(self, api_client) -> None:
        client, admin_token, _ = api_client
        user_id = _member(client)["user"]["id"]
        member_role = _role_id(client, admin_token, "Member")
        assert client.put(f"/api/v1/users/{user_id}/roles/{member_role}", headers=bearer(admin_token)).status_code == 204

    def test_unassign(self, api_client) -> None:
        client, admin_token, _ = api_client
        user_id = _member(client)["user"]["id"]
        member_role = _role_id(client, admin_token, "Member")
        headers = bearer(admin_token)

        assert client.delete(f"/api/v1/users/{user_id}/roles/{member_role}", headers=headers).status_code == 204
        assert client.delete(f"/api/v1/users/{user_id}/roles/{member_role}", headers=headers).status_code == 404
        assert client.get(f"/api/v1/users/{user_id}/roles", headers=headers).json() == []

    def test_unknown_account_or_role(self, api_client) -> None:
        client, admin_token, _ = api_client
        headers = bearer(admin_token)
        member_role = _role_id(client, admin_token, "Member")
        user_id = _member(client)["user"]["id"]
        assert client.put(f"/api/v1/users/cust_missing/roles/{member_role}", headers=headers).status_code == 404
        assert client.put(f"/api/v1/users/{user_id}/roles/99999", headers=headers).status_code == 404


class TestOperatorDevices:
    def test_list_and_revoke_account_sessions(self, api_client) -> None:
        client, admin_token, _ = api_client
        member = _member(client)
        user_id = member["user"]["id"]
        headers = bearer(admin_token)

        devices = client.get(f"/api/v1/users/{user_id}/devices", headers=headers)
        assert devices.status_code == 200
        assert len(devices.json()) == 1
        assert devices.json()[0]["current"] is False

        device_id = devices.json()[0]["id"]
        assert client.delete(f"/api/v1/users/{user_id}/devices/{device_id}", headers=headers).status_code == 204
        assert client.get("/api/v1/auth/me", headers=bearer(member["access_token"])).status_code == 401

    def test_revoke_all_for_account(self, api_client) -> None:
        client, admin_token, _ = api_client
        member = _member(client)
        client.post("/api/v1/auth/login", json={"email": member["email"], "password": PASSWORD})

        resp = client.post(f"/api/v1/users/{member['user']['id']}/devices/revoke-all", headers=bearer(admin_token))

        assert resp.status_code == 200
        assert resp.json()["revoked"] == 4
        assert client.get("/api/v1/auth/me", headers=bearer(admin_token)).status_code == 200

    def test_unknown_account(self, api_client) -> None:
        client, admin_token, _ = api_client
        assert client.get("/api/v1/users/cust_missing/devices", headers=bearer(admin_token)).status_code == 404

    def test_member_cannot_view_other_sessions(self, api_client) -> None:
        client, _, admin_id = api_client
        member = _member(client)
        resp = client.get(f"/api/v1/users/{admin_id}/devices", headers=bearer(member["access_token"]))
        assert resp.status_code == 403
