"""Integration tests for the authentication flow.

Tests the complete auth flow including:
- Registration
- Password login
- Two-factor enable, login step-up, and disable
- Bearer token handling on protected routes
"""

import pytest
from fastapi.testclient import TestClient

from wastewise import app as app_module
from wastewise.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def credentials():
    return {"name": "Test Cook", "email": "cook@example.com", "password": "hunter22"}


def _register(client, credentials):
    response = client.post("/api/auth/register", json=credentials)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestHealth:
    def test_health_message(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"message": "WasteWise API is running!"}
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Request-ID"]


class TestRegistration:
    """Tests for account registration."""

    def test_register_returns_account_and_token(self, client, credentials):
        data = _register(client, credentials)

        assert data["token"]
        account = data["account"]
        assert account["email"] == "cook@example.com"
        assert account["role"] == "user"
        assert account["permissions"] == []
        assert "inventory:read" in account["effective_permissions"]
        assert account["two_factor_enabled"] is False
        assert "password" not in account

    def test_register_duplicate_email(self, client, credentials):
        _register(client, credentials)

        response = client.post("/api/auth/register", json=credentials)

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert body["error"]["message"] == "user already exists"

    def test_register_missing_fields(self, client):
        response = client.post("/api/auth/register", json={"email": "a@example.com"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["missing"] == ["name", "password"]

    def test_register_and_login_with_short_password(self, client):
        """The alice scenario: register, then log in without 2FA."""
        alice = {"name": "Alice", "email": "alice@example.com", "password": "pw1"}
        _register(client, alice)

        response = client.post(
            "/api/auth/login", json={"email": alice["email"], "password": "pw1"}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"]
        assert data["account"]["email"] == "alice@example.com"
        assert data["account"]["two_factor_enabled"] is False

    def test_malformed_body_is_400(self, client):
        """Schema failures use the same envelope as service validation."""
        response = client.post("/api/auth/register", json={"name": ["not", "a", "string"]})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "invalid request"
        assert error["details"][0]["field"] == "name"


class TestLogin:
    """Tests for password login."""

    def test_login_success(self, client, credentials):
        _register(client, credentials)

        response = client.post(
            "/api/auth/login",
            json={"email": credentials["email"], "password": credentials["password"]},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"]
        assert data["account"]["last_login"] is not None

    def test_login_failures_are_indistinguishable(self, client, credentials):
        _register(client, credentials)

        wrong_password = client.post(
            "/api/auth/login", json={"email": credentials["email"], "password": "nope-nope"}
        )
        unknown_email = client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": "hunter22"}
        )

        assert wrong_password.status_code == unknown_email.status_code == 401
        assert wrong_password.json()["error"] == unknown_email.json()["error"]

    def test_login_malformed_email_is_400(self, client):
        response = client.post(
            "/api/auth/login", json={"email": "not-an-email", "password": "hunter22"}
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"] == {"field": "email"}

    def test_error_request_id_matches_header(self, client):
        response = client.post(
            "/api/auth/login",
            json={"email": "ghost@example.com", "password": "hunter22"},
            headers={"X-Request-ID": "req-login-42"},
        )

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-login-42"
        assert response.json()["request_id"] == "req-login-42"


class TestCurrentAccount:
    def test_me_returns_account(self, client, credentials):
        data = _register(client, credentials)

        response = client.get("/api/auth/me", headers=_auth(data["token"]))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == data["account"]["id"]

    def test_me_without_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "not authorized, no token"

    def test_me_with_bad_token(self, client):
        response = client.get("/api/auth/me", headers=_auth("not-a-token"))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "not authorized, token failed"

    def test_non_ascii_token_is_401(self, client):
        token = "Bearer eyJhbGciOiJIUzI1NiJ9.e30.\u00e9".encode("latin-1")

        response = client.get("/api/auth/me", headers={"Authorization": token})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_profile_path_matches_me(self, client, credentials):
        data = _register(client, credentials)

        response = client.get("/api/auth/profile", headers=_auth(data["token"]))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == data["account"]["id"]

    def test_me_after_account_deleted(self, client, credentials):
        data = _register(client, credentials)
        get_runtime().store.delete_account(data["account"]["id"])

        response = client.get("/api/auth/me", headers=_auth(data["token"]))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "not authorized, user not found"


class TestTwoFactorFlow:
    """Enabling two-factor auth, logging in with a code, and disabling it."""

    def test_full_two_factor_cycle(self, client, credentials, notifier):
        token = _register(client, credentials)["token"]

        sent = client.post("/api/auth/enable-2fa", headers=_auth(token))
        assert sent.status_code == 200
        assert sent.json()["data"] == {
            "code_sent": True,
            "message": "Verification code sent to your email",
        }

        enabled = client.post(
            "/api/auth/enable-2fa",
            headers=_auth(token),
            json={"code": notifier.last_code("enable_2fa")},
        )
        assert enabled.status_code == 200
        assert enabled.json()["data"]["two_factor_enabled"] is True
        assert enabled.json()["data"]["message"] == "Two-factor authentication enabled successfully"

        login = {"email": credentials["email"], "password": credentials["password"]}
        challenge = client.post("/api/auth/login", json=login)
        assert challenge.status_code == 200
        assert challenge.json()["data"]["requires_two_factor"] is True
        assert "token" not in challenge.json()["data"]

        completed = client.post(
            "/api/auth/login",
            json={**login, "twoFactorCode": notifier.last_code("login")},
        )
        assert completed.status_code == 200
        assert completed.json()["data"]["token"]

        client.post("/api/auth/disable-2fa", headers=_auth(token))
        disabled = client.post(
            "/api/auth/disable-2fa",
            headers=_auth(token),
            json={"code": notifier.last_code("disable_2fa")},
        )
        assert disabled.status_code == 200
        assert disabled.json()["data"]["two_factor_enabled"] is False

        direct = client.post("/api/auth/login", json=login)
        assert direct.json()["data"]["token"]

    def test_reused_login_code_rejected(self, client, credentials, notifier):
        data = _register(client, credentials)
        get_runtime().store.update_account(data["account"]["id"], two_factor_enabled=True)
        login = {"email": credentials["email"], "password": credentials["password"]}
        client.post("/api/auth/login", json=login)
        code = notifier.last_code("login")

        first = client.post("/api/auth/login", json={**login, "twoFactorCode": code})
        second = client.post("/api/auth/login", json={**login, "twoFactorCode": code})

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["error"]["code"] == "invalid_code"
        assert second.json()["error"]["message"] == "invalid or expired verification code"

    def test_enable_when_already_enabled(self, client, credentials, notifier):
        data = _register(client, credentials)
        get_runtime().store.update_account(data["account"]["id"], two_factor_enabled=True)

        response = client.post("/api/auth/enable-2fa", headers=_auth(data["token"]))

        assert response.status_code == 400
        assert notifier.sent == []

    def test_delivery_failure_is_502(self, client, credentials, notifier):
        token = _register(client, credentials)["token"]
        notifier.succeed = False

        response = client.post("/api/auth/enable-2fa", headers=_auth(token))

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "notification_failed"
