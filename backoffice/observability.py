import os
import re
import json
import uuid
import logging
import threading
from collections import Counter
from logging.config import dictConfig
from typing import Optional

import sentry_sdk
from flask import g, has_app_context
from sentry_sdk.integrations.flask import FlaskIntegration

logger = logging.getLogger(__name__)

# ---- per-delivery correlation id ----
CORRELATION_HEADER = "X-Request-ID"
_CORRELATION_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def bind_correlation_id(incoming: Optional[str] = None) -> str:
    """Adopt the caller's request id when it looks sane, else mint one. Lives on flask.g."""
    value = (incoming or "").strip()
    if not _CORRELATION_RE.match(value):
        value = str(uuid.uuid4())
    g.correlation_id = value
    return value


def get_correlation_id() -> Optional[str]:
    if not has_app_context():
        return None
    return g.get("correlation_id")


class CorrelationIdFilter(logging.Filter):
    """Stamps every record so JSON log lines from one delivery can be joined."""

    def filter(self, record):
        record.correlation_id = get_correlation_id()
        return True


def init_logging(app):
    """Structured logs (JSON) in staging/prod; keep default console in dev/tests."""
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    level = (app.config.get("LOG_LEVEL") or "INFO").upper()
    if app_env in ("staging", "production"):
        fmt = "%(asctime)s %(levelname)s %(name)s %(correlation_id)s %(message)s"
        dictConfig({
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": "pythonjsonlogger.json.JsonFormatter", "fmt": fmt}},
            "filters": {"correlation": {"()": CorrelationIdFilter}},
            "handlers": {"wsgi": {"class": "logging.StreamHandler", "formatter": "json", "filters": ["correlation"]}},
            "root": {"level": level, "handlers": ["wsgi"]},
        })
    else:
        app.logger.setLevel(level)

def init_sentry(app):
    """Wire Sentry if DSN present; safe no-op otherwise."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
            profiles_sample_rate=float(os.getenv("SENTRY_PROFILES", "0.0")),
            environment=os.getenv("APP_ENV", "development"),
        )
    except Exception as exc:
        app.logger.warning("Sentry init skipped: %s", exc)


# Label keys kept on counters; anything else (emails, phone numbers) is dropped
ALLOWED_LABELS = ("org_id", "event_type", "status", "reason", "severity", "outcome")


class Metrics:
    """
    In-process counters for webhook outcomes.

    One instance lives in ``app.extensions["metrics"]``. Each increment is also
    logged as a JSON line at DEBUG so a log shipper can aggregate across workers.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = Counter()

    @staticmethod
    def _key(name, labels):
        clean = tuple(sorted((k, str(v)) for k, v in labels.items() if k in ALLOWED_LABELS and v is not None))
        return (name, clean)

    def increment(self, name: str, value: int = 1, **labels) -> None:
        key = self._key(name, labels)
        with self._lock:
            self._counts[key] += value
        logger.debug(json.dumps({"type": "metric", "name": name, "value": value, "labels": dict(key[1])}))

    def value(self, name: str, **labels) -> int:
        """Sum of a counter across all label sets that include ``labels``."""
        wanted = set((k, str(v)) for k, v in labels.items())
        with self._lock:
            return sum(n for (metric, lbls), n in self._counts.items() if metric == name and wanted.issubset(lbls))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                f"{name}{{{','.join(f'{k}={v}' for k, v in lbls)}}}" if lbls else name: n
                for (name, lbls), n in self._counts.items()
            }

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


def get_metrics() -> Metrics:
    from flask import current_app
    return current_app.extensions["metrics"]
