# avr/__init__.py
# Donation payments service: Flask app factory
# Goals:
# - one gateway client + one plan cache per process, built here and injected
# - refuse to boot without a gateway credential outside development
# - JSON error shape everywhere (this is an API service)
# - request ids in every log line

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional, Type, Union
from uuid import uuid4

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

# IMPORTANT: never override real env vars in prod
load_dotenv(override=False)

ConfigLike = Union[str, Type[Any]]

from avr.config import CONFIG_BY_NAME  # noqa: E402
from avr.extensions import db, init_all_extensions  # noqa: E402
from avr.services.gateway import build_gateway_client  # noqa: E402
from avr.services.orchestrator import SubscriptionOrchestrator  # noqa: E402
from avr.services.plan_cache import PaymentPlanCache  # noqa: E402
from avr.services.reconciler import StatusReconciler  # noqa: E402
from avr.services.webhooks import WebhookEventHandler  # noqa: E402


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _env_bool(name: str) -> Optional[bool]:
    v = os.getenv(name)
    if v is None:
        return None
    s = str(v).strip().lower()
    if s in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "f", "no", "n", "off"}:
        return False
    return None


def _explicit_env() -> Optional[str]:
    """APP_ENV / ENV / FLASK_ENV, normalized; None when none is set."""
    for key in ("APP_ENV", "ENV", "FLASK_ENV"):
        val = (os.getenv(key) or "").strip().lower()
        if val:
            if val in {"prod"}:
                return "production"
            if val in {"dev"}:
                return "development"
            return val
    return None


def _env_mode(app: Optional[Flask] = None) -> str:
    """
    Determine environment mode deterministically.
    Priority:
      1) app.config["ENV"] (if present and meaningful)
      2) APP_ENV / ENV / FLASK_ENV env vars
      3) default "production"; development is never implied
    """
    if app is not None:
        v = app.config.get("ENV")
        if v and str(v).strip() and str(v).strip() not in {"?", "base"}:
            return str(v).strip().lower()

    return _explicit_env() or "production"


def _resolve_config(target: Optional[ConfigLike]) -> ConfigLike:
    """
    Choose config class/module path.
    - If explicitly provided, respect it ("testing", a class, or a dotted path).
    - Else if FLASK_CONFIG is set, use it.
    - Else use the config named by APP_ENV / ENV / FLASK_ENV.
    - Else BaseConfig, which runs as production.
    """
    if target is None:
        target = (os.getenv("FLASK_CONFIG") or "").strip() or None
    if target is None:
        return CONFIG_BY_NAME.get(_explicit_env() or "base", CONFIG_BY_NAME["base"])
    if isinstance(target, str) and target.lower() in CONFIG_BY_NAME:
        return CONFIG_BY_NAME[target.lower()]
    return target


def _json_error(message: str, status: int, **extra: Any):
    payload: Dict[str, Any] = {"ok": False, "message": str(message), "error": {"code": int(status), "message": str(message)}}
    rid = extra.pop("request_id", None)
    if rid:
        payload["error"]["request_id"] = rid
    if extra:
        payload["error"].update(extra)

    resp = jsonify(payload)
    resp.status_code = int(status)
    return resp


# -----------------------------------------------------------------------------
# Logging with request_id
# -----------------------------------------------------------------------------
class _RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            # outside an app/request context (CLI, background mail jobs)
            record.request_id = "-"
        return True


def _configure_logging(app: Flask) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s [rid=%(request_id)s]: %(message)s"
    root = logging.getLogger()

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        handler.addFilter(_RequestIDFilter())
        root.addHandler(handler)
    else:
        for h in root.handlers:
            if not any(isinstance(f, _RequestIDFilter) for f in h.filters):
                h.addFilter(_RequestIDFilter())
            if not getattr(h, "formatter", None) or "%(request_id)s" not in getattr(h.formatter, "_fmt", ""):
                h.setFormatter(logging.Formatter(fmt))

    root.setLevel(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    logging.getLogger("werkzeug").setLevel(str(app.config.get("WERKZEUG_LOG_LEVEL", "WARNING")).upper())
    app.logger.info("Loaded config: ENV=%s DEBUG=%s", app.config.get("ENV", "?"), app.debug)


# -----------------------------------------------------------------------------
# ProxyFix (reverse proxy)
# -----------------------------------------------------------------------------
def _apply_proxyfix(app: Flask) -> None:
    trust = _env_bool("TRUST_PROXY")
    if trust is None:
        trust = _env_mode(app) == "production"

    if not trust:
        return

    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=1)  # type: ignore[method-assign]
    app.logger.info("ProxyFix enabled (trusting X-Forwarded-* headers).")


# -----------------------------------------------------------------------------
# Payment services (one set per app)
# -----------------------------------------------------------------------------
def _init_payment_services(app: Flask) -> None:
    gateway = build_gateway_client(app.config)
    plan_cache = PaymentPlanCache(ttl_seconds=int(app.config.get("PLAN_CACHE_TTL_SECONDS", 3600)))

    app.extensions["gateway"] = gateway
    app.extensions["plan_cache"] = plan_cache
    app.extensions["orchestrator"] = SubscriptionOrchestrator(
        gateway, plan_cache, currency=app.config.get("HELCIM_CURRENCY")
    )
    app.extensions["reconciler"] = StatusReconciler(gateway)
    app.extensions["webhook_handler"] = WebhookEventHandler()
    app.logger.info("Payment gateway ready (%s mode, %s)", gateway.mode, gateway.currency)


def _maybe_create_sqlite_tables(app: Flask) -> None:
    uri = (app.config.get("SQLALCHEMY_DATABASE_URI") or "").strip()
    if not uri.startswith("sqlite"):
        return
    if app.config.get("AUTO_CREATE_SQLITE", True) is not True:
        return

    import avr.models  # noqa: F401  (register tables on db.metadata)

    with app.app_context():
        db.create_all()


# -----------------------------------------------------------------------------
# Request lifecycle + errors
# -----------------------------------------------------------------------------
def _register_request_lifecycle(app: Flask) -> None:
    @app.before_request
    def _bootstrap_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g._start_ts = time.perf_counter()

    @app.after_request
    def _attach_request_headers(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "-")
        start = getattr(g, "_start_ts", None)
        if start:
            resp.headers["X-Response-Time-ms"] = str(int((time.perf_counter() - start) * 1000))
        return resp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_err(err: HTTPException):
        return _json_error(err.description or err.name, err.code or 500, request_id=getattr(g, "request_id", "-"))

    @app.errorhandler(Exception)
    def _uncaught(err: Exception):
        app.logger.exception("Unhandled error")

        if (request.path or "").startswith("/donations/webhook"):
            return ("", 500)

        return _json_error("Internal Server Error", 500, request_id=getattr(g, "request_id", "-"))


def _register_health_endpoints(app: Flask) -> None:
    @app.get("/healthz")
    def _healthz():
        return {
            "status": "ok",
            "env": app.config.get("ENV", "unknown"),
            "gateway": app.extensions["gateway"].mode,
            "cached_plans": len(app.extensions["plan_cache"]),
            "request_id": getattr(g, "request_id", "-"),
        }


# -----------------------------------------------------------------------------
# App Factory
# -----------------------------------------------------------------------------
def create_app(config_class: Optional[ConfigLike] = None) -> Flask:
    app = Flask(__name__, static_folder=None, template_folder=None)

    # ---- Config loading
    cfg = _resolve_config(config_class)
    app.config.from_object(cfg)

    # ---- Normalize environment (do NOT leave ENV=base)
    env = _env_mode(app)
    app.config["ENV"] = env

    init_hook = getattr(cfg, "init_app", None)
    if callable(init_hook):
        init_hook(app)

    app.url_map.strict_slashes = False
    app.config.setdefault("JSON_SORT_KEYS", False)
    app.config.setdefault("PROPAGATE_EXCEPTIONS", False)

    _apply_proxyfix(app)
    _configure_logging(app)

    # ---- Gateway (raises ConfigurationMissing: refuse to start before touching the DB)
    _init_payment_services(app)

    # ---- Core extensions
    init_all_extensions(app)
    _maybe_create_sqlite_tables(app)

    # ---- Request lifecycle / errors
    _register_request_lifecycle(app)
    _register_error_handlers(app)

    # ---- Blueprints + health
    from avr.blueprints.donations import bp as donations_bp

    app.register_blueprint(donations_bp, url_prefix="/donations")
    _register_health_endpoints(app)

    # ---- CLI
    from avr.cli import payments_cli

    app.cli.add_command(payments_cli)

    return app
