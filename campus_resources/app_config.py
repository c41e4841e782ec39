import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from services.user_access_service import SESSION_TTL_SECONDS, require_session_secret


DEFAULT_DB_URL = "sqlite:///./var/campus_resources.db"
DEFAULT_CORS_ORIGINS = "http://127.0.0.1,http://localhost"
TRUTHY = {"1", "true", "yes", "on"}


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = DEFAULT_DB_URL
    session_secret: str = Field(..., min_length=32)
    session_ttl_seconds: int = Field(SESSION_TTL_SECONDS, ge=1)
    cors_allow_origins: tuple[str, ...] = ("http://127.0.0.1", "http://localhost")
    cors_allow_credentials: bool = True
    debug: bool = False
    log_level: str = "INFO"
    auto_create_db: bool = True
    write_retry_attempts: int = Field(3, ge=1)

    @property
    def session_secret_bytes(self) -> bytes:
        return self.session_secret.encode("utf-8")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in TRUTHY


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got '{raw}'.") from exc


def load_config() -> AppConfig:
    load_dotenv()

    secret = require_session_secret(os.environ.get("SESSION_SIGNING_SECRET")).decode("utf-8")
    origins = _parse_csv_env("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ORIGINS)
    allow_credentials = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
    if "*" in origins:
        # Browsers reject wildcard origins with credentials.
        allow_credentials = False

    return AppConfig(
        database_url=(os.environ.get("CAMPUS_RESOURCES_DB_URL") or DEFAULT_DB_URL).strip(),
        session_secret=secret,
        session_ttl_seconds=_parse_int_env("SESSION_TTL_SECONDS", SESSION_TTL_SECONDS),
        cors_allow_origins=tuple(origins),
        cors_allow_credentials=allow_credentials,
        debug=_parse_bool_env("APP_DEBUG", "false"),
        log_level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
        auto_create_db=_parse_bool_env("AUTO_CREATE_DB", "true"),
        write_retry_attempts=_parse_int_env("WRITE_RETRY_ATTEMPTS", 3),
    )
