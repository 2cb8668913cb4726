"""Integration tests for api/routes/v1/auth.py and api/routes/v1/oauth.py.

Covers:
- Signup / login / token grants through HTTP, including no-store headers
- 401 envelope with WWW-Authenticate after logout
- Device listing and revocation for the caller
- Forgot / reset password round trip through the recording mailer
- Permission-gated account management (403 for members, self-suspension block)
- Redirect sign-in with a mocked authlib client
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from starlette.responses import RedirectResponse

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, bearer, unique_email

PASSWORD = "member-pass-1"


def _signup_and_login(client, email: str | None = None, headers: dict | None = None) -> dict:
    email = email or unique_email()
    resp = client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD, "first_name": "Test"})
    assert resp.status_code == 201
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD}, headers=headers or {})
    assert resp.status_code == 200
    return resp.json()


class TestSignupAndLogin:
    def test_signup_returns_account(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("signup")
        resp = client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 201
        data = resp.json()
        assert data["email"] == email
        assert data["provider"] == "local"
        assert data["email_verified"] is False
        assert "password_hash" not in data

    def test_duplicate_signup_conflicts(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("dup")
        client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})
        resp = client.post("/api/v1/auth/signup", json={"email": email.upper(), "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_invalid_email_is_422(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/signup", json={"email": "not-an-email", "password": PASSWORD})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_login_returns_token_pair(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("login")
        client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})

        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["access_token"] and data["refresh_token"]
        assert data["user"]["email"] == email

    def test_wrong_password_is_generic_401(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("wrong")
        client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})
        wrong = client.post("/api/v1/auth/login", json={"email": email, "password": "nope-nope"})
        unknown = client.post("/api/v1/auth/login", json={"email": unique_email("ghost"), "password": PASSWORD})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]
        assert wrong.headers["www-authenticate"] == "Bearer"


class TestCurrentAccount:
    def test_me_includes_roles(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(client)
        resp = client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"]))
        assert resp.status_code == 200
        assert [r["name"] for r in resp.json()["roles"]] == ["Member"]

    def test_me_without_token(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_refresh_token_is_not_a_bearer(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(client)
        assert client.get("/api/v1/auth/me", headers=bearer(tokens["refresh_token"])).status_code == 401

    def test_change_password(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("chg")
        tokens = _signup_and_login(client, email)
        resp = client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "another-pass"},
            headers=bearer(tokens["access_token"]),
        )
        assert resp.status_code == 204
        assert client.post("/api/v1/auth/login", json={"email": email, "password": "another-pass"}).status_code == 200


class TestTokenEndpoint:
    def test_refresh_is_single_use(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(client)

        first = client.post(
            "/api/v1/auth/token", json={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]}
        )
        again = client.post(
            "/api/v1/auth/token", json={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]}
        )

        assert first.status_code == 200
        assert first.headers["cache-control"] == "no-store"
        assert first.json()["refresh_token"] != tokens["refresh_token"]
        assert again.status_code == 401

    def test_token_info(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(client)
        resp = client.post("/api/v1/auth/token", json={"grant_type": "token_info", "access_token": tokens["access_token"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["active"] is True
        assert data["sub"] == tokens["user"]["id"]
        assert "order:create" in data["scopes"]
        assert data["roles"] == ["Member"]

    def test_grant_without_its_field(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/token", json={"grant_type": "refresh_token"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "bad_request"

    def test_unknown_grant_type(self, api_client) -> None:
        client, _, _ = api_client
        assert client.post("/api/v1/auth/token", json={"grant_type": "password"}).status_code == 422

    def test_id_token_grant_creates_then_reuses_account(self, api_client, idp_keys) -> None:
        client, _, _ = api_client
        email = unique_email("google")
        token = idp_keys.id_token("sub-" + email, email)

        created = client.post("/api/v1/auth/token", json={"grant_type": "id_token", "id_token": token})
        returning = client.post("/api/v1/auth/token", json={"grant_type": "id_token", "id_token": token})

        assert created.status_code == 201
        assert created.json()["is_new_user"] is True
        assert created.json()["user"]["provider"] == "google"
        assert returning.status_code == 200
        assert returning.json()["is_new_user"] is False
        assert returning.json()["user"]["id"] == created.json()["user"]["id"]

    def test_id_token_for_local_account_requires_linking(self, api_client, idp_keys) -> None:
        client, _, _ = api_client
        email = unique_email("local")
        client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})
        resp = client.post(
            "/api/v1/auth/token", json={"grant_type": "id_token", "id_token": idp_keys.id_token("g-" + email, email)}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "account_linking_required"

    def test_id_token_for_wrong_audience(self, api_client, idp_keys) -> None:
        client, _, _ = api_client
        token = idp_keys.id_token("g-aud", unique_email(), aud="other-client")
        resp = client.post("/api/v1/auth/token", json={"grant_type": "id_token", "id_token": token})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_assertion"


class TestLogoutAndDevices:
    def test_logout_revokes_access_and_refresh(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(client)
        headers = bearer(tokens["access_token"])

        assert client.post("/api/v1/auth/logout", headers=headers).status_code == 204

        resp = client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"
        refreshed = client.post(
            "/api/v1/auth/token", json={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]}
        )
        assert refreshed.status_code == 401

    def test_device_headers_are_recorded(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(
            client, headers={"X-Device-Name": "Test Phone", "X-OS-Name": "Android", "User-Agent": "okhttp Mobile"}
        )
        devices = client.get("/api/v1/auth/devices", headers=bearer(tokens["access_token"])).json()
        assert len(devices) == 1
        assert devices[0]["current"] is True
        assert devices[0]["device_info"]["device_name"] == "Test Phone"
        assert devices[0]["device_info"]["device_type"] == "mobile"

    def test_revoke_other_device(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("dev")
        first = _signup_and_login(client, email)
        second = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD}).json()
        headers = bearer(first["access_token"])

        devices = client.get("/api/v1/auth/devices", headers=headers).json()
        other = next(d for d in devices if not d["current"])

        assert client.delete(f"/api/v1/auth/devices/{other['id']}", headers=headers).status_code == 204
        assert client.get("/api/v1/auth/me", headers=bearer(second["access_token"])).status_code == 401
        assert client.delete(f"/api/v1/auth/devices/{other['id']}", headers=headers).status_code == 404

    def test_revoke_all_keeps_current(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("all")
        current = _signup_and_login(client, email)
        for _ in range(2):
            client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})

        resp = client.post("/api/v1/auth/devices/revoke-all", headers=bearer(current["access_token"]))

        assert resp.status_code == 200
        assert resp.json()["revoked"] == 4
        assert client.get("/api/v1/auth/me", headers=bearer(current["access_token"])).status_code == 200


class TestPasswordRecovery:
    def test_forgot_password_is_always_200(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/forgot-password", json={"email": unique_email("nobody")})
        assert resp.status_code == 200

    def test_reset_round_trip(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("reset")
        tokens = _signup_and_login(client, email)
        client.post("/api/v1/auth/forgot-password", json={"email": email})
        reset_token = client.app.state.auth.account_service.mailer.last_token("password_reset", email)

        resp = client.post("/api/v1/auth/reset-password", json={"token": reset_token, "new_password": "fresh-pass"})

        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"])).status_code == 401
        assert client.post("/api/v1/auth/login", json={"email": email, "password": "fresh-pass"}).status_code == 200

    def test_verify_email(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("verify")
        client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})
        token = client.app.state.auth.account_service.mailer.last_token("verification", email)

        assert client.get("/api/v1/auth/verify-email", params={"token": token}).status_code == 200
        resend = client.post("/api/v1/auth/resend-verification", json={"email": email})
        assert resend.status_code == 400


class TestProviders:
    def test_providers_lists_google(self, api_client) -> None:
        client, _, _ = api_client
        providers = client.get("/api/v1/auth/providers").json()
        assert {"name": "google", "label": "Google", "redirect": True} in providers

    def test_link_and_unlink(self, api_client, idp_keys) -> None:
        client, _, _ = api_client
        email = unique_email("link")
        tokens = _signup_and_login(client, email)
        headers = bearer(tokens["access_token"])

        resp = client.post(
            "/api/v1/auth/link-provider", json={"id_token": idp_keys.id_token("g-" + email, email)}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["linked_providers"] == ["google"]

        linked = client.get("/api/v1/auth/linked-providers", headers=headers).json()
        assert linked["primary_provider"] == "local"
        assert linked["providers"][0]["provider_id"] == "g-" + email

        resp = client.post("/api/v1/auth/unlink-provider", json={"provider": "google"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["linked_providers"] == []

    @pytest.mark.parametrize("provider", ["local", "facebook"])
    def test_unlink_rejects_unsupported_provider(self, api_client, provider) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(client, unique_email("unsupported"))
        resp = client.post(
            "/api/v1/auth/unlink-provider", json={"provider": provider}, headers=bearer(tokens["access_token"])
        )
        assert resp.status_code == 422

    def test_oauth_login_redirects(self, api_client) -> None:
        client, _, _ = api_client
        oauth_client = client.app.state.oauth.create_client.return_value
        oauth_client.authorize_redirect = AsyncMock(
            return_value=RedirectResponse("https://accounts.google.com/o/oauth2/auth?state=x")
        )

        resp = client.get("/api/v1/auth/oauth/google/login", follow_redirects=False)

        assert resp.status_code in (302, 307)
        assert resp.headers["location"].startswith("https://accounts.google.com/")
        redirect_uri = oauth_client.authorize_redirect.call_args.args[1]
        assert redirect_uri.endswith("/api/v1/auth/oauth/google/callback")

    def test_oauth_callback_signs_in(self, api_client) -> None:
        client, _, _ = api_client
        email = unique_email("redirect")
        oauth_client = client.app.state.oauth.create_client.return_value
        oauth_client.authorize_access_token = AsyncMock(
            return_value={"userinfo": {"sub": "g-" + email, "email": email, "email_verified": True}}
        )

        resp = client.get("/api/v1/auth/oauth/google/callback?code=abc&state=x")

        assert resp.status_code == 201
        assert resp.headers["cache-control"] == "no-store"
        assert resp.json()["user"]["email"] == email

    def test_oauth_unknown_provider(self, api_client) -> None:
        client, _, _ = api_client
        assert client.get("/api/v1/auth/oauth/apple/login", follow_redirects=False).status_code == 404


class TestAccountManagement:
    def test_member_cannot_list_users(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _signup_and_login(client)
        resp = client.get("/api/v1/auth/users", headers=bearer(tokens["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_lists_and_filters_users(self, api_client) -> None:
        client, admin_token, _ = api_client
        email = unique_email("findme")
        client.post("/api/v1/auth/signup", json={"email": email, "password": PASSWORD})

        resp = client.get("/api/v1/auth/users", params={"search": email}, headers=bearer(admin_token))

        assert resp.status_code == 200
        data = resp.json()
        assert data["metadata"]["total"] == 1
        assert data["items"][0]["email"] == email

    def test_admin_sees_user_roles(self, api_client) -> None:
        client, admin_token, admin_id = api_client
        resp = client.get(f"/api/v1/auth/users/{admin_id}", headers=bearer(admin_token))
        assert resp.status_code == 200
        assert [r["name"] for r in resp.json()["roles"]] == ["System Admin"]
        assert resp.json()["email"] == ADMIN_EMAIL

    def test_suspend_revokes_sessions(self, api_client) -> None:
        client, admin_token, _ = api_client
        tokens = _signup_and_login(client)
        user_id = tokens["user"]["id"]

        resp = client.patch(
            f"/api/v1/auth/users/{user_id}/status", json={"status": "suspended"}, headers=bearer(admin_token)
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "suspended"
        assert client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"])).status_code == 401

    def test_admin_cannot_suspend_self(self, api_client) -> None:
        client, admin_token, admin_id = api_client
        resp = client.patch(
            f"/api/v1/auth/users/{admin_id}/status", json={"status": "inactive"}, headers=bearer(admin_token)
        )
        assert resp.status_code == 400
        login = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        assert login.status_code == 200

    def test_status_of_unknown_account(self, api_client) -> None:
        client, admin_token, _ = api_client
        resp = client.patch(
            "/api/v1/auth/users/cust_missing/status", json={"status": "active"}, headers=bearer(admin_token)
        )
        assert resp.status_code == 404
