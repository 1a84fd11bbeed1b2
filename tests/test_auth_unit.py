"""Unit tests for the auth service.

Covers password hashing and policy, JWT issue/verify, revocation,
verification codes and the register/login/refresh/logout lifecycle, all
against the memory store with no cache.
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from findclass.config import Settings
from findclass.service.auth import AuthService, validate_password_policy
from findclass.service.email import EmailService
from findclass.service.errors import (
    AuthenticationError,
    EmailExistsError,
    InvalidRefreshTokenError,
    InvalidVerificationCodeError,
    RateLimitedError,
    ValidationError,
    VerificationCodeExpiredError,
)
from findclass.storage.memory import MemoryStore

PASSWORD = "Str0ng@Passw0rd!"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        verification_code_rate_limit=3,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def email_service():
    return EmailService()


@pytest.fixture
def auth_service(memory_store, settings, email_service):
    return AuthService(memory_store, None, settings, email_service=email_service)


@pytest.fixture
def test_user(memory_store, auth_service):
    user = memory_store.create_user("test@example.com", "Test", role="STUDENT", status="ACTIVE")
    auth_service.save_password(user.id, PASSWORD)
    return user


def _last_code(email_service) -> str:
    text = email_service.outbox[-1]["text"]
    return next(line.strip() for line in text.splitlines() if line.strip().isdigit())


class TestPasswordPolicy:
    """Tests for the account password policy."""

    def test_strong_password_passes(self):
        validate_password_policy(PASSWORD)

    @pytest.mark.parametrize(
        "password",
        ["short@1A", "alllowercase@123", "ALLUPPERCASE@123", "NoDigitsHere@@", "NoSpecials12345"],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            validate_password_policy(password)

    def test_policy_reports_requirements(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_password_policy("abc")
        assert exc_info.value.detail["field"] == "password"
        assert exc_info.value.detail["requirements"]


class TestPasswordHashing:
    """Tests for argon2id hashing."""

    def test_hash_is_salted(self, auth_service):
        hash1, algo = auth_service._hash_password(PASSWORD)
        hash2, _ = auth_service._hash_password(PASSWORD)
        assert algo == "argon2id"
        assert hash1 != hash2
        assert PASSWORD not in hash1

    def test_verify_password(self, auth_service, test_user):
        assert auth_service.verify_password(test_user.id, PASSWORD)
        assert not auth_service.verify_password(test_user.id, "Wrong@Passw0rd!")

    def test_verify_password_without_record(self, auth_service):
        assert not auth_service.verify_password("missing-user", PASSWORD)


class TestJwt:
    """Tests for token signing and verification."""

    def test_issued_access_token_decodes(self, auth_service, test_user):
        tokens = auth_service.issue_tokens(test_user)
        payload = auth_service.decode_jwt(tokens["access_token"], expected_type="access")
        assert payload["sub"] == test_user.id
        assert payload["role"] == "STUDENT"
        assert tokens["token_type"] == "bearer"
        assert tokens["expires_in"] == 15 * 60

    def test_token_type_is_enforced(self, auth_service, test_user):
        tokens = auth_service.issue_tokens(test_user)
        assert auth_service.decode_jwt(tokens["refresh_token"], expected_type="access") is None
        assert auth_service.decode_jwt(tokens["access_token"], expected_type="refresh") is None

    def test_tampered_signature_rejected(self, auth_service, test_user):
        token = auth_service.issue_tokens(test_user)["access_token"]
        header, payload, sig = token.split(".")
        forged = f"{header}.{payload}.{sig[:-2]}xx"
        assert auth_service.decode_jwt(forged) is None

    def test_wrong_algorithm_rejected(self, auth_service):
        header = auth_service._encode_segment(b'{"alg":"none","typ":"JWT"}')
        payload = auth_service._encode_segment(b'{"sub":"x"}')
        assert auth_service.decode_jwt(f"{header}.{payload}.") is None

    def test_expired_token_rejected(self, auth_service, test_user, settings):
        claims = {
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "sub": test_user.id,
            "jti": "expired-jti",
            "token_type": "access",
            "exp": int(time.time()) - 3600,
        }
        assert auth_service.decode_jwt(auth_service.encode_jwt(claims)) is None

    def test_wrong_audience_rejected(self, auth_service, test_user, settings):
        claims = {
            "iss": settings.jwt_issuer,
            "aud": "someone-else",
            "sub": test_user.id,
            "jti": "aud-jti",
            "token_type": "access",
            "exp": int(time.time()) + 600,
        }
        assert auth_service.decode_jwt(auth_service.encode_jwt(claims)) is None

    def _claims(self, settings, user_id, **overrides):
        claims = {
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "sub": user_id,
            "jti": "skew-jti",
            "token_type": "access",
            "exp": int(time.time()) + 600,
        }
        claims.update(overrides)
        return claims

    def test_recently_expired_token_within_leeway(self, auth_service, test_user, settings):
        claims = self._claims(settings, test_user.id, exp=int(time.time()) - 60)
        payload = auth_service.decode_jwt(auth_service.encode_jwt(claims), expected_type="access")
        assert payload is not None
        assert payload["sub"] == test_user.id

    def test_expired_token_beyond_leeway(self, auth_service, test_user, settings):
        claims = self._claims(settings, test_user.id, exp=int(time.time()) - 300)
        assert auth_service.decode_jwt(auth_service.encode_jwt(claims)) is None

    def test_audience_list(self, auth_service, test_user, settings):
        claims = self._claims(settings, test_user.id, aud=["another-client", settings.jwt_audience])
        assert auth_service.decode_jwt(auth_service.encode_jwt(claims)) is not None

    def test_audience_list_without_ours(self, auth_service, test_user, settings):
        claims = self._claims(settings, test_user.id, aud=["another-client", "third-party"])
        assert auth_service.decode_jwt(auth_service.encode_jwt(claims)) is None

    def test_garbage_rejected(self, auth_service):
        assert auth_service.decode_jwt("not-a-token") is None
        assert auth_service.decode_jwt("") is None


class TestAuthenticate:
    """Tests for bearer authentication."""

    async def test_authenticate_valid_bearer(self, auth_service, test_user):
        tokens = auth_service.issue_tokens(test_user)
        ctx = await auth_service.authenticate(f"Bearer {tokens['access_token']}")
        assert ctx.user_id == test_user.id
        assert ctx.email == "test@example.com"
        assert not ctx.is_admin

    async def test_authenticate_rejects_other_schemes(self, auth_service, test_user):
        tokens = auth_service.issue_tokens(test_user)
        assert await auth_service.authenticate(f"Basic {tokens['access_token']}") is None
        assert await auth_service.authenticate(None) is None

    async def test_disabled_user_cannot_authenticate(self, auth_service, test_user, memory_store):
        tokens = auth_service.issue_tokens(test_user)
        memory_store.update_user(test_user.id, status="DISABLED")
        assert await auth_service.authenticate_token(tokens["access_token"]) is None

    async def test_role_change_applies_immediately(self, auth_service, test_user, memory_store):
        tokens = auth_service.issue_tokens(test_user)
        memory_store.update_user(test_user.id, role="TEACHER")
        ctx = await auth_service.authenticate_token(tokens["access_token"])
        assert ctx.role == "TEACHER"


class TestLifecycle:
    """Tests for register, login, refresh and logout."""

    async def test_register_returns_tokens(self, auth_service):
        user, tokens = await auth_service.register("New@Example.com", PASSWORD, "New User", role="PARENT")
        assert user.email == "new@example.com"
        assert user.role == "PARENT"
        assert auth_service.decode_jwt(tokens["access_token"], expected_type="access")

    async def test_register_duplicate_email(self, auth_service, test_user):
        with pytest.raises(EmailExistsError):
            await auth_service.register("test@example.com", PASSWORD, "Dup")

    async def test_register_rejects_admin_role(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("x@example.com", PASSWORD, "X", role="ADMIN")

    async def test_register_rejects_weak_password(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("weak@example.com", "weak", "Weak")

    async def test_login_wrong_password(self, auth_service, test_user):
        with pytest.raises(AuthenticationError):
            await auth_service.login("test@example.com", "Wrong@Passw0rd!")

    async def test_login_unknown_email(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.login("nobody@example.com", PASSWORD)

    async def test_refresh_rotates_and_rejects_reuse(self, auth_service, test_user):
        _, tokens = await auth_service.login("test@example.com", PASSWORD)
        _, rotated = await auth_service.refresh_tokens(tokens["refresh_token"])
        assert rotated["refresh_token"] != tokens["refresh_token"]
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(tokens["refresh_token"])

    async def test_refresh_rejects_access_token(self, auth_service, test_user):
        _, tokens = await auth_service.login("test@example.com", PASSWORD)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(tokens["access_token"])

    async def test_logout_revokes_both_tokens(self, auth_service, test_user):
        _, tokens = await auth_service.login("test@example.com", PASSWORD)
        await auth_service.logout(tokens["access_token"], tokens["refresh_token"])
        assert await auth_service.authenticate_token(tokens["access_token"]) is None
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh_tokens(tokens["refresh_token"])

    async def test_change_password_keeps_current_session(self, auth_service, test_user):
        _, current = await auth_service.login("test@example.com", PASSWORD)
        _, other = await auth_service.login("test@example.com", PASSWORD)
        ctx = await auth_service.authenticate_token(current["access_token"])
        await auth_service.change_password(
            test_user.id, PASSWORD, "N3w@Passw0rd!!", current_jti=ctx.jti
        )
        assert await auth_service.authenticate_token(current["access_token"])
        assert await auth_service.authenticate_token(other["access_token"]) is None
        assert auth_service.verify_password(test_user.id, "N3w@Passw0rd!!")

    async def test_change_password_wrong_current(self, auth_service, test_user):
        with pytest.raises(AuthenticationError):
            await auth_service.change_password(test_user.id, "Wrong@Passw0rd!", "N3w@Passw0rd!!")


class TestVerificationCodes:
    """Tests for emailed one-time codes."""

    async def test_send_and_verify(self, auth_service, email_service):
        result = await auth_service.send_verification_code("code@example.com", "REGISTER")
        assert result["expires_in"] == 300
        code = _last_code(email_service)
        assert len(code) == 6
        assert await auth_service.verify_code("code@example.com", code, "REGISTER")

    async def test_code_is_single_use(self, auth_service, email_service):
        await auth_service.send_verification_code("code@example.com", "REGISTER")
        code = _last_code(email_service)
        await auth_service.verify_code("code@example.com", code, "REGISTER")
        with pytest.raises(VerificationCodeExpiredError):
            await auth_service.verify_code("code@example.com", code, "REGISTER")

    async def test_wrong_code(self, auth_service, email_service):
        await auth_service.send_verification_code("code@example.com", "REGISTER")
        code = _last_code(email_service)
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidVerificationCodeError):
            await auth_service.verify_code("code@example.com", wrong, "REGISTER")

    async def test_code_types_are_separate(self, auth_service, email_service):
        await auth_service.send_verification_code("code@example.com", "REGISTER")
        code = _last_code(email_service)
        with pytest.raises(VerificationCodeExpiredError):
            await auth_service.verify_code("code@example.com", code, "LOGIN")

    async def test_unknown_code_type(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.send_verification_code("code@example.com", "BOGUS")

    async def test_send_rate_limited(self, auth_service):
        for _ in range(3):
            await auth_service.send_verification_code("spam@example.com", "REGISTER")
        with pytest.raises(RateLimitedError) as exc_info:
            await auth_service.send_verification_code("spam@example.com", "REGISTER")
        assert exc_info.value.detail["retry_after"] > 0

    async def test_password_reset_flow(self, auth_service, email_service, test_user):
        await auth_service.request_password_reset("test@example.com")
        code = _last_code(email_service)
        await auth_service.reset_password("test@example.com", code, "Res3t@Passw0rd!")
        assert auth_service.verify_password(test_user.id, "Res3t@Passw0rd!")

    async def test_password_reset_unknown_email_is_silent(self, auth_service, email_service):
        await auth_service.request_password_reset("ghost@example.com")
        assert len(email_service.outbox) == 0

    async def test_code_expires_after_ttl(self, auth_service, email_service, monkeypatch):
        await auth_service.send_verification_code("late@example.com", "REGISTER")
        code = _last_code(email_service)
        later = datetime.now(timezone.utc) + timedelta(seconds=301)
        monkeypatch.setattr(auth_service, "_now", lambda: later)
        with pytest.raises(VerificationCodeExpiredError) as exc_info:
            await auth_service.verify_code("late@example.com", code, "REGISTER")
        assert exc_info.value.error_code == "code_expired"

    async def test_reset_request_past_send_limit_is_silent(self, auth_service, email_service, test_user):
        for _ in range(5):
            await auth_service.request_password_reset("test@example.com")
        assert len(email_service.outbox) == 3


class TestCleanup:
    """Tests for pruning expired sessions and in-process auth state."""

    def test_store_rows_kept_through_leeway(self, auth_service, memory_store, test_user):
        tokens = auth_service.issue_tokens(test_user)
        access = auth_service.decode_jwt(tokens["access_token"])["jti"]
        refresh = auth_service.decode_jwt(tokens["refresh_token"])["jti"]
        now = datetime.now(timezone.utc)
        memory_store.tokens[access].expires_at = now - timedelta(minutes=10)
        memory_store.tokens[refresh].expires_at = now - timedelta(seconds=30)

        assert auth_service.cleanup_expired_tokens() == 1
        assert access not in memory_store.tokens
        assert refresh in memory_store.tokens

    def test_in_process_state_pruned(self, auth_service):
        now = datetime.now(timezone.utc)
        auth_service._revoked_jtis.update(
            {"old": now - timedelta(minutes=10), "live": now + timedelta(minutes=10)}
        )
        auth_service._codes[("a@example.com", "REGISTER")] = ("123456", now - timedelta(seconds=1))
        auth_service._codes[("b@example.com", "REGISTER")] = ("654321", now + timedelta(minutes=4))
        auth_service._code_sends[("a@example.com", "LOGIN")] = [time.monotonic() - 3600]
        auth_service._code_sends[("b@example.com", "LOGIN")] = [time.monotonic()]

        auth_service.cleanup_expired_tokens()

        assert set(auth_service._revoked_jtis) == {"live"}
        assert set(auth_service._codes) == {("b@example.com", "REGISTER")}
        assert set(auth_service._code_sends) == {("b@example.com", "LOGIN")}

    async def test_revocation_survives_cleanup(self, auth_service, test_user):
        tokens = auth_service.issue_tokens(test_user)
        payload = auth_service.decode_jwt(tokens["access_token"])
        await auth_service.revoke_payload(payload)
        auth_service.cleanup_expired_tokens()
        assert await auth_service.is_revoked(payload["jti"])
