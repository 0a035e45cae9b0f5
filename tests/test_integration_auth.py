"""Integration tests for the authentication flow.

Covers registration, login, refresh, profile, logout and revocation of
both token types, and the admin role endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from hivelog import app as app_module
from hivelog.service.runtime import get_runtime

PASSWORD = "HoneyComb123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="keeper@example.com", username="keeper"):
    return client.post(
        "/api/auth/register",
        json={"username": username, "email": email, "password": PASSWORD},
    )


def _login(client, email="keeper@example.com"):
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200, response.text
    return response


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_user_with_default_role(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["email"] == "keeper@example.com"
        assert body["data"]["roles"] == ["user"]
        assert "password" not in body["data"]

    def test_duplicate_email_is_conflict(self, client):
        _register(client)
        response = _register(client, username="other")

        assert response.status_code == 409
        assert response.json()["success"] is False
        assert response.json()["message"] == "Email already registered."

    def test_short_password_rejected(self, client):
        response = client.post(
            "/api/auth/register",
            json={"username": "k", "email": "k@example.com", "password": "short"},
        )
        assert response.status_code == 400


class TestLogin:
    def test_login_returns_tokens_and_sets_cookies(self, client):
        _register(client)
        response = _login(client)

        data = response.json()["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == get_runtime().settings.access_ttl_seconds
        cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith("jwtcookie=") and "HttpOnly" in c for c in cookies)
        assert any(c.startswith("refreshToken=") for c in cookies)

    @pytest.mark.parametrize(
        "email,password",
        [("keeper@example.com", "WrongPassword1!"), ("nobody@example.com", PASSWORD)],
    )
    def test_bad_credentials_share_one_message(self, client, email, password):
        _register(client)
        response = client.post("/api/auth/login", json={"email": email, "password": password})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials."

    def test_login_email_is_case_insensitive(self, client):
        _register(client)
        _login(client, email="Keeper@Example.com")


class TestSession:
    def test_me_requires_bearer(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_me_returns_profile(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]

        response = client.get("/api/auth/me", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"]["username"] == "keeper"

    def test_update_profile(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]

        response = client.put("/api/auth/me", headers=_auth(token), json={"username": "apiarist"})

        assert response.status_code == 200
        assert response.json()["data"]["username"] == "apiarist"

    def test_logout_revokes_still_valid_token(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]
        assert client.get("/api/auth/me", headers=_auth(token)).status_code == 200

        response = client.post("/api/auth/logout", headers=_auth(token))
        assert response.status_code == 200
        cleared = response.headers.get_list("set-cookie")
        assert any(c.startswith("jwtcookie=") and "Max-Age=0" in c for c in cleared)

        response = client.get("/api/auth/me", headers=_auth(token))
        assert response.status_code == 401
        assert response.json()["message"] == "This session has expired. Please log in again."

    def test_refresh_issues_new_access_token(self, client):
        _register(client)
        refresh_token = _login(client).json()["data"]["refresh_token"]

        response = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})

        assert response.status_code == 200
        access = response.json()["data"]["access_token"]
        assert client.get("/api/auth/me", headers=_auth(access)).status_code == 200

    def test_refresh_token_is_not_an_access_token(self, client):
        _register(client)
        refresh_token = _login(client).json()["data"]["refresh_token"]
        assert client.get("/api/auth/me", headers=_auth(refresh_token)).status_code == 401

    def test_logout_revokes_refresh_token(self, client):
        _register(client)
        data = _login(client).json()["data"]

        client.post(
            "/api/auth/logout",
            headers=_auth(data["access_token"]),
            json={"refresh_token": data["refresh_token"]},
        )

        response = client.post(
            "/api/auth/refresh", headers={"X-Refresh-Token": data["refresh_token"]}
        )
        assert response.status_code == 401


class TestAdmin:
    def _admin_token(self, client):
        user = _register(client, email="admin@example.com", username="root").json()["data"]
        get_runtime().store.assign_role(user["id"], "admin")
        return _login(client, email="admin@example.com").json()["data"]["access_token"]

    def test_non_admin_is_forbidden(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]

        response = client.get("/api/admin/users", headers=_auth(token))

        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_admin_lists_roles_and_users(self, client):
        token = self._admin_token(client)

        roles = client.get("/api/admin/roles", headers=_auth(token)).json()["data"]
        users = client.get("/api/admin/users", headers=_auth(token)).json()["data"]

        assert {"admin", "vet", "spectator", "user"} <= {role["name"] for role in roles}
        assert users[0]["roles"] == ["user", "admin"]

    def test_assign_and_remove_role(self, client):
        token = self._admin_token(client)
        keeper = _register(client).json()["data"]

        response = client.post(
            f"/api/admin/users/{keeper['id']}/roles", headers=_auth(token), json={"role": "vet"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["roles"] == ["user", "vet"]

        response = client.delete(f"/api/admin/users/{keeper['id']}/roles/vet", headers=_auth(token))
        assert response.json()["data"]["roles"] == ["user"]

    def test_unknown_role_and_user_are_404(self, client):
        token = self._admin_token(client)
        keeper = _register(client).json()["data"]

        response = client.post(
            f"/api/admin/users/{keeper['id']}/roles", headers=_auth(token), json={"role": "queen"}
        )
        assert response.status_code == 404
        response = client.get("/api/admin/users/missing", headers=_auth(token))
        assert response.status_code == 404
