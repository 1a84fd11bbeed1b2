"""Integration tests for the HTTP auth flow.

Register, login, refresh, logout, profile, verification codes and password
reset through the FastAPI app with the memory store.
"""

from conftest import STRONG_PASSWORD

from findclass.service.runtime import get_runtime


def _code_from_outbox() -> str:
    text = get_runtime().email.outbox[-1]["text"]
    return next(line.strip() for line in text.splitlines() if line.strip().isdigit())


class TestRegister:
    """Tests for POST /auth/register."""

    def test_register_creates_user(self, client):
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "Parent@Example.com", "password": STRONG_PASSWORD, "name": "Pat", "role": "PARENT"},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        assert body["request_id"]
        assert body["data"]["user"]["email"] == "parent@example.com"
        assert body["data"]["user"]["role"] == "PARENT"
        assert body["data"]["tokens"]["token_type"] == "bearer"

    def test_register_duplicate_email(self, client, register):
        register(email="dup@example.com")
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "dup@example.com", "password": STRONG_PASSWORD, "name": "Again"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_exists"

    def test_register_weak_password(self, client):
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "weak@example.com", "password": "weakpass", "name": "Weak"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_register_invalid_email(self, client):
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "not-an-email", "password": STRONG_PASSWORD, "name": "Bad"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"][0]["field"] == "email"

    def test_register_cannot_self_assign_admin(self, client):
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "sneaky@example.com", "password": STRONG_PASSWORD, "name": "S", "role": "ADMIN"},
        )
        assert resp.status_code == 400


class TestLoginAndTokens:
    """Tests for login, refresh and logout."""

    def test_login_success(self, client, register):
        register(email="login@example.com")
        resp = client.post(
            "/api/v1/auth/login", json={"email": "login@example.com", "password": STRONG_PASSWORD}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["tokens"]["access_token"]
        assert "X-RateLimit-Limit" in resp.headers

    def test_login_wrong_password(self, client, register):
        register(email="login@example.com")
        resp = client.post(
            "/api/v1/auth/login", json={"email": "login@example.com", "password": "Wr0ng@Password!"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_refresh_rotates(self, client, register):
        _, _, tokens = register()
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        new_tokens = resp.json()["data"]["tokens"]
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        reused = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "invalid_refresh_token"

    def test_logout_revokes_access_token(self, client, register):
        _, headers, tokens = register()
        resp = client.post(
            "/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]}, headers=headers
        )
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 401
        refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 401

    def test_me_requires_auth(self, client):
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_garbage_token(self, client):
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401

    def test_me_and_update(self, client, register):
        _, headers, _ = register(name="Original")
        assert client.get("/api/v1/auth/me", headers=headers).json()["data"]["name"] == "Original"
        resp = client.put(
            "/api/v1/auth/me", json={"name": "Renamed", "language": "en"}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "Renamed"
        assert resp.json()["data"]["language"] == "en"


class TestVerificationAndReset:
    """Tests for emailed codes and password reset."""

    def test_send_and_verify_code(self, client):
        resp = client.post("/api/v1/auth/send-code", json={"email": "code@example.com"})
        assert resp.status_code == 200
        assert resp.json()["data"]["expires_in"] == 300
        code = _code_from_outbox()
        verified = client.post(
            "/api/v1/auth/verify-code", json={"email": "code@example.com", "code": code}
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["verified"] is True

    def test_verify_without_send_is_expired(self, client):
        resp = client.post(
            "/api/v1/auth/verify-code", json={"email": "code@example.com", "code": "123456"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "code_expired"

    def test_send_code_rate_limited(self, client):
        for _ in range(3):
            assert client.post("/api/v1/auth/send-code", json={"email": "spam@example.com"}).status_code == 200
        resp = client.post("/api/v1/auth/send-code", json={"email": "spam@example.com"})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "Retry-After" in resp.headers

    def test_password_reset(self, client, register):
        register(email="reset@example.com")
        resp = client.post("/api/v1/auth/password/reset-request", json={"email": "reset@example.com"})
        assert resp.status_code == 200
        code = _code_from_outbox()
        resp = client.post(
            "/api/v1/auth/password/reset",
            json={"email": "reset@example.com", "code": code, "new_password": "Brand@NewPass99"},
        )
        assert resp.status_code == 200
        login = client.post(
            "/api/v1/auth/login", json={"email": "reset@example.com", "password": "Brand@NewPass99"}
        )
        assert login.status_code == 200

    def test_reset_request_unknown_email_looks_the_same(self, client):
        resp = client.post("/api/v1/auth/password/reset-request", json={"email": "ghost@example.com"})
        assert resp.status_code == 200
        assert len(get_runtime().email.outbox) == 0

    def test_repeated_reset_requests_match_unknown_email(self, client, register):
        register(email="known@example.com")
        answers = {}
        for email in ("known@example.com", "unknown@example.com"):
            responses = [
                client.post("/api/v1/auth/password/reset-request", json={"email": email})
                for _ in range(4)
            ]
            answers[email] = [
                (r.status_code, r.json()["status"], r.json()["data"], r.json().get("error"))
                for r in responses
            ]
        assert answers["known@example.com"] == answers["unknown@example.com"]
        assert {status for status, *_ in answers["known@example.com"]} == {200}

    def test_reset_revokes_existing_sessions(self, client, register):
        _, headers, tokens = register(email="stolen@example.com")
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
        client.post("/api/v1/auth/password/reset-request", json={"email": "stolen@example.com"})
        resp = client.post(
            "/api/v1/auth/password/reset",
            json={"email": "stolen@example.com", "code": _code_from_outbox(), "new_password": "Brand@NewPass99"},
        )
        assert resp.status_code == 200

        assert client.get("/api/v1/auth/me", headers=headers).status_code == 401
        refreshed = client.post(
            "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refreshed.status_code == 401
