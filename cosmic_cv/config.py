from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
logger = logging.getLogger("cosmic_cv.config")

DEFAULT_CORS_ORIGINS = [
    "https://cv.somosmaas.org",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
]
DEFAULT_CHECKOUT_URL = "https://somosmaas.lemonsqueezy.com/buy/9a84d545-268d-42da-b7b8-9b77bd47cf43"


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_ENV_VALUES


def env_text(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def env_int(name: str, default: int, lower: int, upper: int) -> int:
    raw = env_text(name)
    try:
        value = int(raw) if raw else default
    except ValueError:
        logger.warning("%s=%r is not an integer. Using %s.", name, raw, default)
        value = default
    return max(lower, min(upper, value))


def env_float(name: str, default: float, lower: float, upper: float) -> float:
    raw = env_text(name)
    try:
        value = float(raw) if raw else default
    except ValueError:
        logger.warning("%s=%r is not a number. Using %s.", name, raw, default)
        value = default
    return max(lower, min(upper, value))


def parse_csv(value: str | None) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def parse_cors_origins(value: str | None) -> list[str]:
    origins = parse_csv(value)
    return origins or DEFAULT_CORS_ORIGINS


def normalize_database_url(value: str | None) -> str:
    raw = (value or "").strip()
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    return raw


def resolve_sqlite_path() -> str:
    explicit = env_text("ENTITLEMENT_DB_PATH")
    if explicit:
        return explicit
    if os.path.isdir("/var/data"):
        return "/var/data/cosmic_cv.db"
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "cosmic_cv.db")


class Settings(BaseModel):
    database_url: str = ""
    sqlite_path: str = ""
    store_timeout_seconds: float = 8.0

    webhook_secret: str = ""
    checkout_url: str = DEFAULT_CHECKOUT_URL
    session_jwt_secret: str = ""

    verify_max_attempts: int = 3
    verify_interval_seconds: float = 2.0

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_fallback_models: list[str] = Field(default_factory=list)

    email_provider: str = "auto"
    email_from_name: str = "Somos MAAS"
    email_reply_to: str = ""
    email_http_timeout_seconds: int = 12
    resend_api_key: str = ""
    resend_from: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_use_tls: bool = True
    smtp_use_ssl: bool = False

    cors_allow_origins: list[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    cors_allow_origin_regex: str | None = None

    @property
    def store_backend(self) -> str:
        if self.database_url.startswith("postgresql://"):
            return "postgres"
        if self.sqlite_path:
            return "sqlite"
        return "none"

    @property
    def resend_enabled(self) -> bool:
        return bool(self.resend_api_key and self.resend_from)

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_port and self.smtp_username and self.smtp_password and self.smtp_from)


def load_settings() -> Settings:
    openai_model = env_text("OPENAI_MODEL", "gpt-4o-mini")
    fallback_models = parse_csv(os.getenv("OPENAI_FALLBACK_MODELS"))
    if not fallback_models:
        fallback_models = [model for model in ["gpt-4.1-mini", "gpt-4o-mini"] if model != openai_model]

    smtp_username = env_text("EMAIL_SMTP_USERNAME")
    smtp_from = env_text("EMAIL_SMTP_FROM", smtp_username)
    settings = Settings(
        database_url=normalize_database_url(os.getenv("DATABASE_URL") or os.getenv("RENDER_POSTGRESQL_URL")),
        sqlite_path="" if env_flag("ENTITLEMENT_STORE_DISABLED") else resolve_sqlite_path(),
        store_timeout_seconds=env_float("STORE_TIMEOUT_SECONDS", 8.0, 1.0, 25.0),
        webhook_secret=env_text("LEMONSQUEEZY_WEBHOOK_SECRET"),
        checkout_url=env_text("LEMONSQUEEZY_CHECKOUT_URL", DEFAULT_CHECKOUT_URL),
        session_jwt_secret=env_text("SESSION_JWT_SECRET") or env_text("SUPABASE_JWT_SECRET"),
        verify_max_attempts=env_int("VERIFY_MAX_ATTEMPTS", 3, 1, 10),
        verify_interval_seconds=env_float("VERIFY_INTERVAL_SECONDS", 2.0, 0.0, 10.0),
        openai_api_key=env_text("OPENAI_API_KEY"),
        openai_model=openai_model,
        openai_fallback_models=fallback_models,
        email_provider=env_text("EMAIL_PROVIDER", "auto").lower(),
        email_from_name=env_text("EMAIL_FROM_NAME", "Somos MAAS"),
        email_reply_to=env_text("EMAIL_REPLY_TO"),
        email_http_timeout_seconds=env_int("EMAIL_HTTP_TIMEOUT_SECONDS", 12, 5, 30),
        resend_api_key=env_text("RESEND_API_KEY"),
        resend_from=env_text("RESEND_FROM", smtp_from),
        smtp_host=env_text("EMAIL_SMTP_HOST"),
        smtp_port=env_int("EMAIL_SMTP_PORT", 587, 1, 65535),
        smtp_username=smtp_username,
        smtp_password=env_text("EMAIL_SMTP_PASSWORD"),
        smtp_from=smtp_from,
        smtp_use_tls=env_flag("EMAIL_SMTP_USE_TLS", True),
        smtp_use_ssl=env_flag("EMAIL_SMTP_USE_SSL", False),
        cors_allow_origins=parse_cors_origins(os.getenv("CORS_ALLOW_ORIGINS")),
        cors_allow_origin_regex=os.getenv("CORS_ALLOW_ORIGIN_REGEX"),
    )

    if not settings.webhook_secret:
        logger.warning("LEMONSQUEEZY_WEBHOOK_SECRET is missing. Payment webhooks will be rejected.")
    if not settings.session_jwt_secret:
        logger.warning("SESSION_JWT_SECRET is missing. Entitlement checks cannot authenticate users.")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is missing. CV analysis requests will not reach OpenAI.")
    if settings.store_backend == "sqlite" and settings.sqlite_path.startswith("/tmp/"):
        logger.warning(
            "ENTITLEMENT_DB_PATH is using temporary storage (%s). Use persistent storage in production.",
            settings.sqlite_path,
        )
    return settings
