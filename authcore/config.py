from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.fields import FieldInfo

from authcore.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32
_SECRET_FILENAME = ".jwt_secret"


def env_field(default: Any, env: str, **kwargs):
    """Pydantic field that remembers the environment variable feeding it."""
    extra = {**(kwargs.pop("json_schema_extra", None) or {}), "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_name(name: str, field: FieldInfo) -> str:
    extra = field.json_schema_extra
    if isinstance(extra, dict) and extra.get("env"):
        return str(extra["env"])
    return name.upper()


def _read_secret(path: Path) -> Optional[str]:
    if not path.exists() or path.is_symlink():
        return None
    try:
        value = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_read_failed", error=str(exc), path=str(path))
        return None
    return value if len(value) >= MIN_SECRET_LENGTH else None


def load_or_create_secret(fs_root: Path) -> str:
    """Return the signing secret kept under ``fs_root``, creating it once.

    The file is written through a temp file and renamed into place with mode
    0600 so concurrent starters never observe a partial secret.
    """
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

    path = fs_root / _SECRET_FILENAME
    existing = _read_secret(path)
    if existing:
        return existing

    generated = secrets.token_urlsafe(64)
    tmp_name = None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(fs_root), prefix=f"{_SECRET_FILENAME}_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the token lifecycle engine and its stores."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; keeps the memory store unpersisted.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_ms: int = env_field(
        60 * 60 * 1000,
        "ACCESS_TOKEN_TTL_MS",
        description="Access token lifetime in milliseconds",
    )
    refresh_token_ttl_ms: int = env_field(
        14 * 24 * 60 * 60 * 1000,
        "REFRESH_TOKEN_TTL_MS",
        description="Refresh token lifetime in milliseconds",
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")
    kakao_allow_missing_email: bool = env_field(
        False,
        "KAKAO_ALLOW_MISSING_EMAIL",
        description="Accept Kakao identities without an email (stored as empty string)",
    )
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, falling back to ``.env``."""
        file_values = dotenv_values(".env")
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            env_name = _env_name(name, field)
            raw = os.environ.get(env_name, file_values.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator("access_token_ttl_ms", "refresh_token_ttl_ms")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("clock_skew_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock skew leeway cannot be negative")
        return value

    @field_validator("frontend_url")
    @classmethod
    def _strip_frontend_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        fs_root = info.data.get("shared_fs_root") or "/srv/authcore"
        return load_or_create_secret(Path(fs_root))


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
