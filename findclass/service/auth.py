from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from findclass.config import Settings
from findclass.logging import get_logger, mask_email
from findclass.service.email import EmailService
from findclass.service.errors import (
    AuthenticationError,
    EmailExistsError,
    ForbiddenError,
    InvalidRefreshTokenError,
    InvalidVerificationCodeError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
    VerificationCodeExpiredError,
)
from findclass.storage.errors import ConstraintViolation
from findclass.storage.models import (
    SELF_SERVICE_ROLES,
    TokenRecord,
    User,
    UserRole,
    UserStatus,
    VerificationCodeType,
)

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 12
PASSWORD_SPECIALS = "@$!%*?&"
SUPPORTED_LANGUAGES = ("zh", "en")

_PROFILE_FIELDS = ("name", "phone", "avatar_url", "language")


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def validate_password_policy(password: str) -> None:
    """Raise ``ValidationError`` unless ``password`` meets the account policy."""
    problems: List[str] = []
    if len(password or "") < PASSWORD_MIN_LENGTH:
        problems.append(f"at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[a-z]", password or ""):
        problems.append("a lowercase letter")
    if not re.search(r"[A-Z]", password or ""):
        problems.append("an uppercase letter")
    if not re.search(r"\d", password or ""):
        problems.append("a digit")
    if not any(ch in PASSWORD_SPECIALS for ch in password or ""):
        problems.append(f"one of {PASSWORD_SPECIALS}")
    if problems:
        raise ValidationError(
            "Password must contain " + ", ".join(problems),
            detail={"field": "password", "requirements": problems},
        )


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    jti: str
    token_exp: int

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


class AuthService:
    """JWT issuance, revocation, verification codes and account lifecycle."""

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.email = email_service or EmailService()
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)
        # In-process fallbacks used when Redis is not configured
        self._state_lock = threading.Lock()
        # jti -> expiry; entries go once the token could no longer verify
        self._revoked_jtis: Dict[str, datetime] = {}
        self._codes: Dict[Tuple[str, str], Tuple[str, datetime]] = {}
        self._code_sends: Dict[Tuple[str, str], List[float]] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    # -- JWT -----------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode_jwt(
        self, token: str, *, expected_type: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Verify ``token`` and return its claims, or ``None`` when invalid."""
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        if expected_type and payload.get("token_type") != expected_type:
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        return payload

    def _claims(self, user: User, token_type: str, ttl: timedelta, now: datetime) -> Dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def issue_tokens(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Sign an access/refresh pair and record both jtis for revocation."""
        now = self._now()
        issued: Dict[str, str] = {}
        for token_type, ttl in (("access", self.access_ttl), ("refresh", self.refresh_ttl)):
            claims = self._claims(user, token_type, ttl, now)
            token = self.encode_jwt(claims)
            self.store.record_token(
                TokenRecord.new(
                    user.id,
                    claims["jti"],
                    hash_token(token),
                    ttl,
                    token_type=token_type,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            issued[token_type] = token
        return {
            "access_token": issued["access"],
            "refresh_token": issued["refresh"],
            "token_type": "bearer",
            "expires_in": int(self.access_ttl.total_seconds()),
            "refresh_expires_in": int(self.refresh_ttl.total_seconds()),
        }

    # -- revocation ----------------------------------------------------------

    def _ttl_from_exp(self, exp: Any) -> int:
        try:
            return max(int(float(exp) - time.time()), 0)
        except (TypeError, ValueError):
            return int(self.refresh_ttl.total_seconds())

    async def _cache_revoke(self, jti: str, token_type: str, ttl_seconds: int) -> None:
        if not self.cache:
            return
        try:
            if token_type == "refresh":
                await self.cache.mark_refresh_revoked(jti, ttl_seconds)
            else:
                await self.cache.denylist_access_token(jti, ttl_seconds)
        except Exception as exc:
            logger.warning("cache_revoke_failed", jti=jti, error=str(exc))

    async def revoke_payload(self, payload: Dict[str, Any], token: Optional[str] = None) -> None:
        """Blacklist one verified token until it would have expired anyway."""
        jti = payload["jti"]
        token_type = payload.get("token_type", "access")
        exp = payload.get("exp")
        expires_at = (
            datetime.fromtimestamp(float(exp), tz=timezone.utc)
            if exp is not None
            else self._now() + self.refresh_ttl
        )
        with self._state_lock:
            self._revoked_jtis[jti] = expires_at
        try:
            self.store.revoke_token(
                jti,
                user_id=payload["sub"],
                token_hash=hash_token(token) if token else "",
                expires_at=expires_at,
                token_type=token_type,
            )
        except ConstraintViolation as exc:
            # The owning user may already be gone
            logger.warning("token_revoke_store_failed", jti=jti, error=exc.message)
        await self._cache_revoke(jti, token_type, self._ttl_from_exp(exp))

    async def is_revoked(self, jti: str, token_type: str = "access") -> bool:
        with self._state_lock:
            if jti in self._revoked_jtis:
                return True
        if self.cache:
            try:
                if token_type == "refresh":
                    hit = await self.cache.is_refresh_revoked(jti)
                else:
                    hit = await self.cache.is_access_token_denylisted(jti)
                if hit:
                    return True
            except Exception as exc:
                logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        return self.store.is_token_revoked(jti)

    async def revoke_all_user_tokens(
        self, user_id: str, *, except_jtis: Iterable[str] = ()
    ) -> int:
        revoked = self.store.revoke_all_user_tokens(user_id, except_jtis=except_jtis)
        for record in revoked:
            with self._state_lock:
                self._revoked_jtis[record.token_jti] = record.expires_at
            ttl = max(int((record.expires_at - self._now()).total_seconds()), 0)
            await self._cache_revoke(record.token_jti, record.token_type, ttl)
        if revoked:
            logger.info("user_tokens_revoked", user_id=user_id, count=len(revoked))
        return len(revoked)

    def cleanup_expired_tokens(self) -> int:
        """Delete token rows and in-process entries no token can still need.

        Rows are kept for the clock-skew leeway past expiry, since a token
        verifies until then and its revocation must still be visible.
        """
        cutoff = self._now() - self._clock_skew_leeway
        removed = self.store.cleanup_expired_tokens(before=cutoff)
        now_mono = time.monotonic()
        window = self.settings.verification_code_rate_window_seconds
        with self._state_lock:
            for jti in [j for j, exp in self._revoked_jtis.items() if _as_utc(exp) <= cutoff]:
                del self._revoked_jtis[jti]
            for key in [k for k, (_, exp) in self._codes.items() if exp <= self._now()]:
                del self._codes[key]
            idle = [
                key
                for key, sends in self._code_sends.items()
                if not sends or now_mono - sends[-1] >= window
            ]
            for key in idle:
                del self._code_sends[key]
        if removed:
            logger.info("expired_tokens_removed", count=removed)
        return removed

    # -- authentication ------------------------------------------------------

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self.extract_bearer(authorization)
        if not token:
            return None
        return await self.authenticate_token(token)

    async def authenticate_token(self, token: str) -> Optional[AuthContext]:
        payload = self.decode_jwt(token, expected_type="access")
        if not payload:
            return None
        if await self.is_revoked(payload["jti"], "access"):
            logger.info("access_token_revoked", jti=payload["jti"])
            return None
        # Re-read the user so role changes and disabling apply immediately
        user = self.store.get_user(payload["sub"])
        if not user or not user.is_active:
            return None
        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            jti=payload["jti"],
            token_exp=int(payload["exp"]),
        )

    # -- passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        if record.password_algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch", user_id=user_id, algo=record.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- verification codes --------------------------------------------------

    async def _count_send(self, email: str, code_type: str) -> int:
        window = self.settings.verification_code_rate_window_seconds
        if self.cache:
            try:
                return await self.cache.hit_send_window(email, code_type, window)
            except Exception as exc:
                logger.warning("verification_rate_cache_failed", error=str(exc))
        now = time.monotonic()
        with self._state_lock:
            sends = [t for t in self._code_sends.get((email, code_type), []) if now - t < window]
            sends.append(now)
            self._code_sends[(email, code_type)] = sends
            return len(sends)

    async def _store_code(self, email: str, code_type: str, code: str) -> None:
        ttl = self.settings.verification_code_ttl_seconds
        if self.cache:
            try:
                await self.cache.store_verification_code(email, code_type, code, ttl)
                return
            except Exception as exc:
                logger.warning("verification_code_cache_failed", error=str(exc))
        with self._state_lock:
            self._codes[(email, code_type)] = (code, self._now() + timedelta(seconds=ttl))

    async def _load_code(self, email: str, code_type: str) -> Optional[str]:
        if self.cache:
            try:
                cached = await self.cache.get_verification_code(email, code_type)
                if cached:
                    return cached
            except Exception as exc:
                logger.warning("verification_code_cache_failed", error=str(exc))
        with self._state_lock:
            entry = self._codes.get((email, code_type))
            if not entry:
                return None
            code, expires_at = entry
            if expires_at <= self._now():
                self._codes.pop((email, code_type), None)
                return None
            return code

    async def _drop_code(self, email: str, code_type: str) -> None:
        if self.cache:
            try:
                await self.cache.delete_verification_code(email, code_type)
            except Exception as exc:
                logger.warning("verification_code_cache_failed", error=str(exc))
        with self._state_lock:
            self._codes.pop((email, code_type), None)

    @staticmethod
    def _code_type(code_type: str) -> str:
        try:
            return VerificationCodeType(str(code_type).upper()).value
        except ValueError:
            raise ValidationError(
                "Unsupported verification code type", field="type"
            )

    async def send_verification_code(self, email: str, code_type: str) -> Dict[str, Any]:
        email = normalize_email(email)
        code_type = self._code_type(code_type)
        sends = await self._count_send(email, code_type)
        if sends > self.settings.verification_code_rate_limit:
            logger.warning("verification_code_rate_limited", email=mask_email(email), type=code_type)
            raise RateLimitedError(
                "Too many verification codes requested; try again later",
                retry_after=self.settings.verification_code_rate_window_seconds,
            )
        code = str(secrets.randbelow(900000) + 100000)
        await self._store_code(email, code_type, code)
        self.email.send_verification_code(
            email, code, code_type, ttl_seconds=self.settings.verification_code_ttl_seconds
        )
        logger.info("verification_code_sent", email=mask_email(email), type=code_type)
        return {"expires_in": self.settings.verification_code_ttl_seconds}

    async def verify_code(self, email: str, code: str, code_type: str) -> bool:
        email = normalize_email(email)
        code_type = self._code_type(code_type)
        stored = await self._load_code(email, code_type)
        if stored is None:
            raise VerificationCodeExpiredError("Verification code has expired or was not requested")
        if not hmac.compare_digest(stored, str(code or "").strip()):
            raise InvalidVerificationCodeError("Verification code is incorrect")
        await self._drop_code(email, code_type)
        return True

    # -- account lifecycle ---------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        role: str = UserRole.STUDENT.value,
        phone: Optional[str] = None,
        language: str = "zh",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, Dict[str, Any]]:
        email = normalize_email(email)
        if "@" not in email:
            raise ValidationError("A valid email is required", field="email")
        if not (name or "").strip():
            raise ValidationError("Name is required", field="name")
        if role not in {r.value for r in SELF_SERVICE_ROLES}:
            raise ValidationError(
                "Role is not available for self-registration", field="role"
            )
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError("Unsupported language", field="language")
        validate_password_policy(password)
        if self.store.get_user_by_email(email):
            raise EmailExistsError("Email already registered", field="email")
        try:
            user = self.store.create_user(
                email,
                name.strip(),
                role=role,
                status=UserStatus.ACTIVE.value,
                phone=phone,
                language=language,
            )
        except ConstraintViolation:
            raise EmailExistsError("Email already registered", field="email")
        self.save_password(user.id, password)
        tokens = self.issue_tokens(user, ip_address=ip_address, user_agent=user_agent)
        logger.info("user_registered", user_id=user.id, role=role)
        return user, tokens

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, Dict[str, Any]]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            logger.info("login_failed", email=mask_email(email))
            raise AuthenticationError("Invalid email or password")
        if user.status == UserStatus.DISABLED.value:
            raise ForbiddenError("Account is disabled")
        tokens = self.issue_tokens(user, ip_address=ip_address, user_agent=user_agent)
        logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    async def refresh_tokens(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, Dict[str, Any]]:
        payload = self.decode_jwt(refresh_token, expected_type="refresh")
        if not payload:
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        if await self.is_revoked(payload["jti"], "refresh"):
            logger.warning("refresh_token_reused", jti=payload["jti"])
            raise InvalidRefreshTokenError("Refresh token has been revoked")
        user = self.store.get_user(payload["sub"])
        if not user:
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        if user.status == UserStatus.DISABLED.value:
            raise ForbiddenError("Account is disabled")
        # Rotation: the presented refresh token is single-use
        await self.revoke_payload(payload, refresh_token)
        tokens = self.issue_tokens(user, ip_address=ip_address, user_agent=user_agent)
        return user, tokens

    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        payload = self.decode_jwt(access_token, expected_type="access")
        if payload:
            await self.revoke_payload(payload, access_token)
        if refresh_token:
            refresh_payload = self.decode_jwt(refresh_token, expected_type="refresh")
            # Only revoke a refresh token that belongs to the same caller
            if refresh_payload and (not payload or refresh_payload["sub"] == payload["sub"]):
                await self.revoke_payload(refresh_payload, refresh_token)
        logger.info("logout", user_id=payload["sub"] if payload else None)

    def get_current_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_current_user(self, user_id: str, **changes: Any) -> User:
        updates = {k: v for k, v in changes.items() if k in _PROFILE_FIELDS and v is not None}
        if "name" in updates and not str(updates["name"]).strip():
            raise ValidationError("Name cannot be empty", field="name")
        if "language" in updates and updates["language"] not in SUPPORTED_LANGUAGES:
            raise ValidationError("Unsupported language", field="language")
        user = self.store.update_user(user_id, **updates)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def request_password_reset(self, email: str) -> None:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            # Same outcome as a real account so emails cannot be enumerated
            logger.info("password_reset_unknown_email", email=mask_email(email))
            return
        try:
            await self.send_verification_code(email, VerificationCodeType.FORGOT_PASSWORD.value)
        except RateLimitedError:
            # A 429 here would only ever happen for registered emails
            logger.warning("password_reset_code_suppressed", email=mask_email(email))

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        email = normalize_email(email)
        validate_password_policy(new_password)
        await self.verify_code(email, code, VerificationCodeType.FORGOT_PASSWORD.value)
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found")
        self.save_password(user.id, new_password)
        await self.revoke_all_user_tokens(user.id)
        logger.info("password_reset_completed", user_id=user.id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_jti: Optional[str] = None,
    ) -> None:
        if not self.verify_password(user_id, current_password):
            raise AuthenticationError("Current password is incorrect")
        validate_password_policy(new_password)
        self.save_password(user_id, new_password)
        await self.revoke_all_user_tokens(
            user_id, except_jtis=[current_jti] if current_jti else ()
        )
        logger.info("password_changed", user_id=user_id)


__all__ = [
    "AuthContext",
    "AuthService",
    "PASSWORD_MIN_LENGTH",
    "hash_token",
    "normalize_email",
    "validate_password_policy",
]
