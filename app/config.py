from __future__ import annotations

import os
from dataclasses import dataclass


def _csv(value: str) -> list[str]:
    items: list[str] = []
    for part in (value or "").split(","):
        item = part.strip()
        if item:
            items.append(item)
    return items


def _env_str(name: str, default: str) -> str:
    return str(os.getenv(name, default) or default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


_DEV_SECRETS = {"", "dev-secret", "dev-link-secret", "dev-pepper"}


@dataclass(frozen=True)
class BaseConfig:
    ENV: str = "development"
    DEBUG: bool = False
    TESTING: bool = False

    APP_VERSION: str = "dev"
    TIMEZONE_DISPLAY: str = "Asia/Kolkata"

    DATABASE_URL: str = "sqlite:///./verification.db"

    JWT_SECRET: str = "dev-secret"
    JWT_EXP_MINUTES: int = 720

    # Signed links and OTP hashing.
    LINK_SECRET: str = "dev-link-secret"
    PEPPER: str = "dev-pepper"
    LINK_MAX_AGE_SECONDS: int = 7 * 24 * 3600
    LINK_CLOCK_SKEW_SECONDS: int = 300
    OTP_EXPIRY_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 3
    TOKEN_EXPIRY_HOURS: int = 48
    PUBLIC_BASE_URL: str = "http://localhost:5002"

    INTERNAL_CRON_TOKEN: str = ""
    ENABLE_SCHEDULER: bool = False
    SWEEP_INTERVAL_MINUTES: int = 15

    # console | smtp | webhook
    MAIL_BACKEND: str = "console"
    MAIL_FROM: str = "no-reply@localhost"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASS: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    MAIL_WEBHOOK_URL: str = ""
    MAIL_WEBHOOK_TOKEN: str = ""
    MAIL_TIMEOUT_SECONDS: int = 15

    # static | smartsheet
    DIRECTORY_BACKEND: str = "static"
    DIRECTORY_STATIC_JSON: str = ""
    SMARTSHEET_API_TOKEN: str = ""
    SMARTSHEET_SHEET_IDS: str = ""
    SMARTSHEET_EMAIL_COLUMN: str = "Email"
    SMARTSHEET_POSITION_COLUMN: str = "Text For Email"
    SMARTSHEET_NAME_COLUMN: str = "Name"
    SMARTSHEET_LINK_COLUMN: str = "Position Link"
    SMARTSHEET_CL_COLUMN: str = "Client Link"
    DIRECTORY_CACHE_SECONDS: int = 60

    # Empty means any brand.
    ALLOWED_BRANDS: list[str] | str = ""

    # static | sql
    RESOLVER_BACKEND: str = "sql"
    BOOKING_DESTINATIONS_JSON: str = ""

    # sql | log
    AUDIT_BACKEND: str = "sql"
    AUDIT_LOGGER: str = "app.audit"

    CORS_ORIGINS: list[str] | str = (
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000"
    )
    CORS_ALLOW_CREDENTIALS: bool = False

    LOG_LEVEL: str = "INFO"

    RATE_LIMIT_GLOBAL: str = "1200 per minute"
    RATE_LIMIT_DEFAULT: str = "300 per minute"
    RATE_LIMIT_VERIFY: str = "20 per minute"

    TRUST_PROXY_HEADERS: bool = True

    def __post_init__(self) -> None:
        for name in (
            "APP_VERSION",
            "TIMEZONE_DISPLAY",
            "DATABASE_URL",
            "JWT_SECRET",
            "LINK_SECRET",
            "PEPPER",
            "PUBLIC_BASE_URL",
            "INTERNAL_CRON_TOKEN",
            "MAIL_FROM",
            "SMTP_HOST",
            "SMTP_USER",
            "SMTP_PASS",
            "MAIL_WEBHOOK_URL",
            "MAIL_WEBHOOK_TOKEN",
            "DIRECTORY_STATIC_JSON",
            "SMARTSHEET_API_TOKEN",
            "SMARTSHEET_SHEET_IDS",
            "SMARTSHEET_EMAIL_COLUMN",
            "SMARTSHEET_POSITION_COLUMN",
            "SMARTSHEET_NAME_COLUMN",
            "SMARTSHEET_LINK_COLUMN",
            "SMARTSHEET_CL_COLUMN",
            "BOOKING_DESTINATIONS_JSON",
            "RATE_LIMIT_GLOBAL",
            "RATE_LIMIT_DEFAULT",
            "RATE_LIMIT_VERIFY",
        ):
            object.__setattr__(self, name, _env_str(name, getattr(self, name)).strip())

        for name in (
            "JWT_EXP_MINUTES",
            "LINK_MAX_AGE_SECONDS",
            "LINK_CLOCK_SKEW_SECONDS",
            "OTP_EXPIRY_MINUTES",
            "OTP_MAX_ATTEMPTS",
            "TOKEN_EXPIRY_HOURS",
            "SWEEP_INTERVAL_MINUTES",
            "SMTP_PORT",
            "MAIL_TIMEOUT_SECONDS",
            "DIRECTORY_CACHE_SECONDS",
        ):
            object.__setattr__(self, name, _env_int(name, getattr(self, name)))

        for name in ("ENABLE_SCHEDULER", "SMTP_USE_TLS", "SMTP_USE_SSL", "CORS_ALLOW_CREDENTIALS", "TRUST_PROXY_HEADERS"):
            object.__setattr__(self, name, _env_bool(name, getattr(self, name)))

        object.__setattr__(self, "MAIL_BACKEND", _env_str("MAIL_BACKEND", self.MAIL_BACKEND).strip().lower())
        object.__setattr__(
            self, "DIRECTORY_BACKEND", _env_str("DIRECTORY_BACKEND", self.DIRECTORY_BACKEND).strip().lower()
        )
        object.__setattr__(self, "RESOLVER_BACKEND", _env_str("RESOLVER_BACKEND", self.RESOLVER_BACKEND).strip().lower())
        object.__setattr__(self, "AUDIT_BACKEND", _env_str("AUDIT_BACKEND", self.AUDIT_BACKEND).strip().lower())
        object.__setattr__(self, "AUDIT_LOGGER", _env_str("AUDIT_LOGGER", self.AUDIT_LOGGER).strip() or "app.audit")
        object.__setattr__(self, "PUBLIC_BASE_URL", self.PUBLIC_BASE_URL.rstrip("/"))

        brands_raw = os.getenv("ALLOWED_BRANDS")
        if brands_raw is None:
            brands_raw = self.ALLOWED_BRANDS if isinstance(self.ALLOWED_BRANDS, str) else ",".join(self.ALLOWED_BRANDS)
        object.__setattr__(self, "ALLOWED_BRANDS", [b.upper() for b in _csv(brands_raw)])

        cors_raw = os.getenv("CORS_ORIGINS")
        if cors_raw is not None:
            cors_raw = str(cors_raw or "").strip()
            if cors_raw == "*":
                object.__setattr__(self, "CORS_ORIGINS", "*")
            else:
                object.__setattr__(self, "CORS_ORIGINS", _csv(cors_raw))
        else:
            object.__setattr__(self, "CORS_ORIGINS", _csv(str(self.CORS_ORIGINS)))

        object.__setattr__(self, "LOG_LEVEL", _env_str("LOG_LEVEL", self.LOG_LEVEL).upper())

    @property
    def IS_PRODUCTION(self) -> bool:
        return str(self.ENV or "").lower() == "production"

    @property
    def SMARTSHEET_SHEETS(self) -> dict[str, list[str]]:
        """Parse `BRAND:id1|id2,BRAND2:id3` into a brand -> sheet ids map."""
        out: dict[str, list[str]] = {}
        for item in _csv(self.SMARTSHEET_SHEET_IDS):
            brand, _, ids = item.partition(":")
            ids_list = [i.strip() for i in ids.split("|") if i.strip()]
            if brand.strip() and ids_list:
                out.setdefault(brand.strip().upper(), []).extend(ids_list)
        return out

    def validate(self) -> None:
        if not self.IS_PRODUCTION:
            return
        if self.JWT_SECRET in _DEV_SECRETS:
            raise RuntimeError("JWT_SECRET must be set in production")
        if self.LINK_SECRET in _DEV_SECRETS:
            raise RuntimeError("LINK_SECRET must be set in production")
        if self.PEPPER in _DEV_SECRETS:
            raise RuntimeError("PEPPER must be set in production")
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL must be set in production")
        if self.MAIL_BACKEND not in {"smtp", "webhook"}:
            raise RuntimeError("MAIL_BACKEND must be smtp or webhook in production")


@dataclass(frozen=True)
class DevelopmentConfig(BaseConfig):
    ENV: str = "development"
    DEBUG: bool = True


@dataclass(frozen=True)
class ProductionConfig(BaseConfig):
    ENV: str = "production"
    DEBUG: bool = False


@dataclass(frozen=True)
class TestingConfig(BaseConfig):
    ENV: str = "testing"
    TESTING: bool = True
    JWT_SECRET: str = "test-secret"
    LINK_SECRET: str = "test-link-secret"
    PEPPER: str = "test-pepper"


def get_config() -> BaseConfig:
    env = str(os.getenv("ENV") or os.getenv("APP_ENV") or "development").strip().lower()
    if env in {"prod", "production"}:
        cfg: BaseConfig = ProductionConfig()
    elif env in {"test", "testing"}:
        cfg = TestingConfig()
    else:
        cfg = DevelopmentConfig()

    cfg.validate()
    return cfg
