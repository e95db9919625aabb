"""Integration tests for the HTTP session endpoints.

Tests the complete flow including:
- Registration and login
- Token refresh via body and cookie
- Logout and logout-all
- Password change
- Admin cleanup and account management
- Error envelope shape
"""

import pytest
from fastapi.testclient import TestClient

from collabboard import app as app_module
from collabboard.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", name="Alice", password=PASSWORD):
    response = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "password": password},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(client):
    """Register a user, promote it directly in the store, and log in again."""
    data = _register(client, email="root@example.com", name="Root")
    get_runtime().store.update_user_role(data["user"]["id"], "admin")
    login = _login(client, email="root@example.com")
    return login.json()["data"]


class TestRegisterAndLogin:
    def test_register_returns_session(self, client):
        data = _register(client)

        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["role"] == "user"
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 15 * 60
        assert data["access_token"] and data["refresh_token"]

    def test_register_sets_http_only_refresh_cookie(self, client):
        response = client.post(
            "/api/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": PASSWORD},
        )

        cookie_header = response.headers["set-cookie"].lower()
        assert "refresh_token=" in cookie_header
        assert "httponly" in cookie_header
        assert "path=/api/auth" in cookie_header
        assert "samesite=strict" in cookie_header

    def test_register_duplicate_email(self, client):
        _register(client)
        response = client.post(
            "/api/auth/register",
            json={"name": "Alice", "email": "ALICE@example.com", "password": PASSWORD},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"

    def test_register_validates_input(self, client):
        response = client.post(
            "/api/auth/register",
            json={"name": "Alice", "email": "not-an-email", "password": PASSWORD},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

        response = client.post(
            "/api/auth/register",
            json={"name": "Alice", "email": "alice@example.com", "password": "short"},
        )
        assert response.status_code == 422

    def test_login_bad_credentials_are_indistinguishable(self, client):
        _register(client)

        wrong_password = _login(client, password="WrongPassword123!")
        unknown_email = _login(client, email="nobody@example.com")

        assert wrong_password.status_code == unknown_email.status_code == 401
        assert wrong_password.json()["error"] == unknown_email.json()["error"]
        assert wrong_password.json()["error"]["code"] == "invalid_credentials"

    def test_me_requires_bearer(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_me_returns_profile(self, client):
        data = _register(client)

        response = client.get("/api/auth/me", headers=_bearer(data["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == data["user"]["id"]

    def test_refresh_token_rejected_as_bearer(self, client):
        data = _register(client)

        response = client.get("/api/auth/me", headers=_bearer(data["refresh_token"]))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestRefreshFlow:
    def test_refresh_with_body(self, client):
        data = _register(client)
        client.cookies.clear()

        response = client.post(
            "/api/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )

        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["user"]["id"] == data["user"]["id"]
        me = client.get("/api/auth/me", headers=_bearer(refreshed["access_token"]))
        assert me.status_code == 200

    def test_refresh_with_cookie(self, client):
        _register(client)

        response = client.post("/api/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["access_token"]

    def test_refresh_without_token(self, client):
        response = client.post("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_refresh_with_garbage(self, client):
        response = client.post("/api/auth/refresh", json={"refresh_token": "garbage"})

        assert response.status_code == 401


class TestLogout:
    def test_logout_revokes_only_this_device(self, client):
        first = _register(client)
        second = _login(client).json()["data"]
        client.cookies.clear()

        response = client.post(
            "/api/auth/logout",
            json={"refresh_token": first["refresh_token"]},
            headers=_bearer(first["access_token"]),
        )
        assert response.status_code == 200

        revoked = client.post("/api/auth/refresh", json={"refresh_token": first["refresh_token"]})
        still_valid = client.post(
            "/api/auth/refresh", json={"refresh_token": second["refresh_token"]}
        )
        assert revoked.status_code == 401
        assert still_valid.status_code == 200

    def test_logout_requires_auth(self, client):
        response = client.post("/api/auth/logout", json={"refresh_token": "x"})

        assert response.status_code == 401

    def test_logout_all_revokes_every_device(self, client):
        laptop = _register(client)
        phone = _login(client).json()["data"]
        client.cookies.clear()

        response = client.post("/api/auth/logout-all", headers=_bearer(phone["access_token"]))
        assert response.status_code == 200

        for token in (laptop["refresh_token"], phone["refresh_token"]):
            refreshed = client.post("/api/auth/refresh", json={"refresh_token": token})
            assert refreshed.status_code == 401

        # Access tokens stay valid until they expire
        me = client.get("/api/auth/me", headers=_bearer(laptop["access_token"]))
        assert me.status_code == 200

    def test_password_change_revokes_sessions(self, client):
        data = _register(client)
        client.cookies.clear()

        response = client.post(
            "/api/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "NewPassword456!"},
            headers=_bearer(data["access_token"]),
        )
        assert response.status_code == 200

        refreshed = client.post("/api/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 401
        assert _login(client, password="NewPassword456!").status_code == 200


class TestAdmin:
    def test_cleanup_requires_admin(self, client):
        data = _register(client)

        response = client.post(
            "/api/admin/tokens/cleanup", headers=_bearer(data["access_token"])
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_cleanup_reports_counts(self, client, admin):
        response = client.post("/api/admin/tokens/cleanup", headers=_bearer(admin["access_token"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total_tokens_removed"] == 0
        assert data["message"] == "Cleaned up 0 expired tokens from 0 users"

    def test_deactivate_user_ends_sessions(self, client, admin):
        alice = _register(client)
        client.cookies.clear()

        response = client.post(
            f"/api/admin/users/{alice['user']['id']}/status",
            json={"is_active": False},
            headers=_bearer(admin["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

        refreshed = client.post("/api/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert refreshed.status_code == 401
        login = _login(client)
        assert login.status_code == 403
        assert login.json()["error"]["code"] == "account_disabled"

    def test_admin_cannot_deactivate_self(self, client, admin):
        response = client.post(
            f"/api/admin/users/{admin['user']['id']}/status",
            json={"is_active": False},
            headers=_bearer(admin["access_token"]),
        )

        assert response.status_code == 400

    def test_create_admin_and_change_role(self, client, admin):
        created = client.post(
            "/api/admin/users/admin",
            json={"name": "Second", "email": "second@example.com", "password": PASSWORD},
            headers=_bearer(admin["access_token"]),
        )
        assert created.status_code == 201
        assert created.json()["data"]["role"] == "admin"

        demoted = client.post(
            f"/api/admin/users/{created.json()['data']['id']}/role",
            json={"role": "user"},
            headers=_bearer(admin["access_token"]),
        )
        assert demoted.status_code == 200
        assert demoted.json()["data"]["role"] == "user"

    def test_unknown_user_is_404(self, client, admin):
        response = client.post(
            "/api/admin/users/does-not-exist/status",
            json={"is_active": True},
            headers=_bearer(admin["access_token"]),
        )

        assert response.status_code == 404


class TestHealth:
    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "ok"

    def test_readiness(self, client):
        response = client.get("/api/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["store"]["status"] == "healthy"

    def test_auth_responses_are_not_cached(self, client):
        response = client.post("/api/auth/refresh")

        assert response.headers["cache-control"] == "no-store"
        assert "x-request-id" in response.headers
