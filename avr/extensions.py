import atexit
import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from flask_mail import Mail, Message
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Core singletons
# ─────────────────────────────────────────────────────────────
db = SQLAlchemy()
migrate = Migrate()
mail = Mail()


# ─────────────────────────────────────────────────────────────
# Background tasks + clean shutdown
# ─────────────────────────────────────────────────────────────
_BG_MAX_WORKERS = int(os.getenv("BG_MAX_WORKERS", "4"))
_EXECUTOR = ThreadPoolExecutor(max_workers=_BG_MAX_WORKERS, thread_name_prefix="avr-bg")


def run_bg(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
    return _EXECUTOR.submit(func, *args, **kwargs)


@atexit.register
def _shutdown_executor() -> None:
    _EXECUTOR.shutdown(wait=False, cancel_futures=True)


# ─────────────────────────────────────────────────────────────
# Safe DB helpers
# ─────────────────────────────────────────────────────────────
def tx_commit() -> None:
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def safe_commit() -> bool:
    try:
        db.session.commit()
        return True
    except Exception as e:
        log.error("DB commit failed: %s", e, exc_info=True)
        db.session.rollback()
        return False


# ─────────────────────────────────────────────────────────────
# Email helper
# ─────────────────────────────────────────────────────────────
def send_email_async(
    app: Any,
    subject: str,
    recipients: List[str],
    *,
    body: str,
    sender: Optional[str] = None,
    max_retries: int = 2,
    retry_backoff: float = 0.5,
) -> Future:
    """Send a plain-text email on the background executor.

    Failures are logged and reported as ``False`` on the returned future;
    they never propagate to the caller's request.
    """

    def _job() -> bool:
        with app.app_context():
            logger = getattr(app, "logger", log)

            msg = Message(
                subject=subject,
                recipients=recipients,
                sender=sender or app.config.get("DEFAULT_MAIL_SENDER"),
                body=body,
            )

            attempts = 0
            while True:
                try:
                    mail.send(msg)
                    return True
                except Exception as e:
                    attempts += 1
                    if attempts > max_retries:
                        logger.error("Email send permanently failed: %s", e, exc_info=True)
                        return False
                    logger.warning(
                        "Mail send failed (attempt %s/%s): %s",
                        attempts,
                        max_retries,
                        e,
                    )
                    time.sleep(float(retry_backoff) * attempts)

    return run_bg(_job)


# ─────────────────────────────────────────────────────────────
# Init all extensions
# ─────────────────────────────────────────────────────────────
def init_all_extensions(app: Any) -> None:
    db.init_app(app)
    migrate.init_app(app, db, compare_type=True, render_as_batch=True)
    mail.init_app(app)


__all__ = [
    "db",
    "migrate",
    "mail",
    "run_bg",
    "tx_commit",
    "safe_commit",
    "send_email_async",
    "init_all_extensions",
]
