from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from findclass.logging import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "findclass-api"
DEFAULT_FS_ROOT = "/srv/findclass"
_SECRET_FILE = ".jwt_secret"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    """A settings field bound to the environment variable ``env``."""
    extra = dict(kwargs.pop("json_schema_extra", None) or {})
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


def load_or_create_jwt_secret(root: Path) -> str:
    """Read ``<root>/.jwt_secret``, creating it with a random value when absent.

    The file is written through a temp file and a rename so concurrent
    workers never read a half-written secret.
    """
    path = root / _SECRET_FILE
    try:
        root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_unavailable", path=str(root), error=str(exc))

    if path.is_file() and not path.is_symlink():
        try:
            existing = path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(path), error=str(exc))
        else:
            if len(existing) >= _MIN_SECRET_LENGTH:
                return existing

    secret = secrets.token_urlsafe(64)
    tmp_name = None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=root, prefix=f"{_SECRET_FILE}.", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            handle.write(secret)
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise RuntimeError(
            f"cannot persist a JWT secret under {root}; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_created", path=str(path))
    return secret


class Settings(BaseModel):
    """Service settings. Each field names its variable through ``env_field``;
    the process environment wins over a ``.env`` file in the working directory.
    """

    model_config = ConfigDict(extra="ignore")

    database_url: str = env_field("postgresql://localhost:5432/findclass", "DATABASE_URL")
    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    build_sha: str = env_field("dev", "BUILD_SHA")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_format: str = env_field("json", "LOG_FORMAT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False, "TEST_MODE", description="Allows runtime resets and running without Redis."
    )

    # tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("findclass.nz-api", "JWT_ISSUER")
    jwt_audience: str = env_field("findclass.nz-web", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # verification codes
    verification_code_ttl_seconds: int = env_field(300, "VERIFICATION_CODE_TTL_SECONDS")
    verification_code_rate_limit: int = env_field(3, "VERIFICATION_CODE_RATE_LIMIT")
    verification_code_rate_window_seconds: int = env_field(
        60, "VERIFICATION_CODE_RATE_WINDOW_SECONDS"
    )

    # requests per minute
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    read_rate_limit_per_minute: int = env_field(120, "READ_RATE_LIMIT_PER_MINUTE")
    write_rate_limit_per_minute: int = env_field(30, "WRITE_RATE_LIMIT_PER_MINUTE")

    # expired sessions, revocations and idle rate-limit buckets
    maintenance_interval_seconds: int = env_field(3600, "MAINTENANCE_INTERVAL_SECONDS")

    # browser access
    cors_allow_origins: List[str] = env_field(["http://localhost:3000"], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # outgoing mail
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    from_email: str = env_field("no-reply@findclass.nz", "FROM_EMAIL")
    from_name: str = env_field("FindClass NZ", "FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    @classmethod
    def env_names(cls) -> Dict[str, str]:
        """Field name -> environment variable."""
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            names[name] = extra.get("env") or name.upper()
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        file_values = dotenv_values(env_file)
        values: Dict[str, Any] = {}
        for name, env_name in cls.env_names().items():
            raw = os.environ.get(env_name, file_values.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_is_none(cls, value: Any) -> Any:
        # REDIS_URL="" means run without Redis
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "verification_code_ttl_seconds",
        "verification_code_rate_limit",
        "verification_code_rate_window_seconds",
        "login_rate_limit_per_minute",
        "register_rate_limit_per_minute",
        "reset_rate_limit_per_minute",
        "read_rate_limit_per_minute",
        "write_rate_limit_per_minute",
        "maintenance_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _jwt_secret(cls, value: Optional[str]) -> str:
        if value:
            return value
        # Validators run before shared_fs_root is known, so read the variable directly
        return load_or_create_jwt_secret(Path(os.getenv("SHARED_FS_ROOT", DEFAULT_FS_ROOT)))


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Forget the cached settings; the next ``get_settings`` re-reads the environment."""
    global _settings_cache
    _settings_cache = None
