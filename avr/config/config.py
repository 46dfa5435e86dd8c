# avr/config/config.py
# Canonical donation-service configuration (env-first, production-safe)

from __future__ import annotations

import os
from datetime import timedelta
from typing import Optional


# ----------------------------
# Env helpers
# ----------------------------
_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = v.strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    return default


def _int(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _currency(name: str, default: str = "USD") -> str:
    c = (_env(name) or "").strip().upper()
    if len(c) == 3 and c.isalpha():
        return c
    return default


# ----------------------------
# Config classes
# ----------------------------
class BaseConfig:
    """
    Env-first config:
    - all important settings can be overridden via environment variables
    - safe defaults for local dev
    """

    ENV = (_env("APP_ENV") or _env("ENV") or _env("FLASK_ENV") or "base").strip().lower()

    DEBUG = _bool("FLASK_DEBUG", False)
    TESTING = _bool("TESTING", False)

    SECRET_KEY = _env("SECRET_KEY", "dev-change-me")
    LOG_LEVEL = _env("LOG_LEVEL", "INFO")

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = _env("SQLALCHEMY_DATABASE_URI", "sqlite:///avr-dev.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_SQLITE = _bool("AUTO_CREATE_SQLITE", True)

    # Payment gateway (Helcim REST v2)
    HELCIM_PRIVATE_API_KEY = _env("HELCIM_PRIVATE_API_KEY", "")
    HELCIM_API_BASE_URL = (_env("HELCIM_API_BASE_URL", "https://api.helcim.com/v2") or "").rstrip("/")
    HELCIM_CURRENCY = _currency("HELCIM_CURRENCY", "USD")
    HELCIM_TIMEOUT = _int("HELCIM_TIMEOUT", 30)
    HELCIM_LIVE_TESTING = _bool("HELCIM_LIVE_TESTING", False)
    HELCIM_SIMULATED = _bool("HELCIM_SIMULATED", False)

    # Webhooks
    HELCIM_WEBHOOK_VERIFIER_TOKEN = _env("HELCIM_WEBHOOK_VERIFIER_TOKEN", "")
    HELCIM_WEBHOOK_TOLERANCE_SECONDS = _int("HELCIM_WEBHOOK_TOLERANCE_SECONDS", 300)

    # Plan cache
    PLAN_CACHE_TTL_SECONDS = _int("PLAN_CACHE_TTL_SECONDS", 3600)

    # Receipts
    RECEIPTS_ENABLED = _bool("RECEIPTS_ENABLED", True)
    ORGANIZATION_NAME = _env("ORGANIZATION_NAME", "American Veterans Rebuilding")
    ORGANIZATION_EIN = _env("ORGANIZATION_EIN", "")
    ORGANIZATION_ADDRESS = _env("ORGANIZATION_ADDRESS", "")

    # Flask-Mail
    MAIL_SERVER = _env("MAIL_SERVER", _env("SMTP_HOST", "localhost"))
    MAIL_PORT = _int("MAIL_PORT", _int("SMTP_PORT", 587))
    MAIL_USE_TLS = _bool("MAIL_USE_TLS", True)
    MAIL_USERNAME = _env("MAIL_USERNAME", _env("SMTP_USERNAME"))
    MAIL_PASSWORD = _env("MAIL_PASSWORD", _env("SMTP_PASSWORD"))
    DEFAULT_MAIL_SENDER = _env("DEFAULT_MAIL_SENDER", _env("FROM_EMAIL", "donations@localhost"))

    PERMANENT_SESSION_LIFETIME = timedelta(days=_int("SESSION_DAYS", 31))

    @classmethod
    def init_app(cls, app) -> None:
        """
        Optional hook for factory boot hardening.
        Call this from create_app() after app.config.from_object(...)
        """
        uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")

        # SQLite tuning (webhooks arrive on concurrent worker threads)
        if uri.startswith("sqlite:"):
            opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
            connect_args = dict(opts.get("connect_args") or {})
            connect_args.setdefault("check_same_thread", False)
            opts["connect_args"] = connect_args
            opts.setdefault("pool_pre_ping", True)
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True

    SQLALCHEMY_DATABASE_URI = _env("SQLALCHEMY_DATABASE_URI", "sqlite:///avr-dev.db")


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    DEBUG = False

    SQLALCHEMY_DATABASE_URI = "sqlite://"
    HELCIM_PRIVATE_API_KEY = ""
    HELCIM_SIMULATED = True
    HELCIM_WEBHOOK_VERIFIER_TOKEN = "c2VjcmV0LXdlYmhvb2sta2V5LWZvci10ZXN0cw=="
    HELCIM_WEBHOOK_TOLERANCE_SECONDS = 0
    RECEIPTS_ENABLED = False
    MAIL_SUPPRESS_SEND = True


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False

    @classmethod
    def init_app(cls, app) -> None:
        super().init_app(app)

        # ---- Production guardrails (fail fast) ----
        sk = app.config.get("SECRET_KEY")
        if not sk or sk == "dev-change-me":
            raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")

        if not (app.config.get("HELCIM_WEBHOOK_VERIFIER_TOKEN") or "").strip():
            raise RuntimeError("HELCIM_WEBHOOK_VERIFIER_TOKEN must be set in production.")

        if _bool("FLASK_DEBUG", False):
            raise RuntimeError("FLASK_DEBUG must be 0 in production.")
