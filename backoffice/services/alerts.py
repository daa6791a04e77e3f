"""
Operational alerts: payment failures, cancellations, webhook pipeline breakage.

Alerts are logged, appended to the audit trail and, when ``ALERT_WEBHOOK_URL``
is set, posted to a Slack-style incoming webhook. Repeats of the same
``dedup_key`` inside the window are dropped.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests
from flask import current_app

from backoffice.observability import get_correlation_id, get_metrics
from . import audit

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"
SEVERITY_CRITICAL = "critical"

_LOG_LEVELS = {
    SEVERITY_INFO: logging.INFO,
    SEVERITY_WARNING: logging.WARNING,
    SEVERITY_ERROR: logging.ERROR,
    SEVERITY_CRITICAL: logging.CRITICAL,
}


@dataclass
class Alert:
    severity: str
    title: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    dedup_key: Optional[str] = None


class TTLCache:
    """Remembers keys for ``ttl`` seconds. Passed around explicitly, never a module global."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: Dict[str, float] = {}

    def __contains__(self, key: str) -> bool:
        with self._lock:
            stamp = self._seen.get(key)
            if stamp is None:
                return False
            if self._clock() - stamp >= self.ttl:
                del self._seen[key]
                return False
            return True

    def add(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            self._seen[key] = now
            # opportunistic purge
            for stale in [k for k, t in self._seen.items() if now - t >= self.ttl * 2]:
                del self._seen[stale]

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class AlertSink:
    def __init__(self, webhook_url: Optional[str] = None, dedup_window: float = 300, http_timeout: float = 5,
                 session: Optional[requests.Session] = None, recent: Optional[TTLCache] = None):
        self.webhook_url = webhook_url
        self.http_timeout = http_timeout
        self._session = session or requests.Session()
        self._recent = recent if recent is not None else TTLCache(dedup_window)

    @classmethod
    def from_config(cls, config) -> "AlertSink":
        return cls(
            webhook_url=config.get("ALERT_WEBHOOK_URL"),
            dedup_window=config.get("ALERT_DEDUP_WINDOW_SECONDS", 300),
            http_timeout=config.get("ALERT_HTTP_TIMEOUT", 5),
        )

    def send(self, alert: Alert) -> bool:
        """Deliver through every channel. Returns False when de-duplicated. Never raises."""
        if alert.dedup_key and alert.dedup_key in self._recent:
            return False
        correlation_id = get_correlation_id()
        if correlation_id:
            alert.context.setdefault("correlation_id", correlation_id)

        get_metrics().increment("alerts.sent", severity=alert.severity)
        current_app.logger.log(
            _LOG_LEVELS.get(alert.severity, logging.WARNING),
            json.dumps({"event": "alert", "severity": alert.severity, "title": alert.title,
                        "message": alert.message, "context": alert.context}, default=str),
        )
        audit.try_record(
            f"alert.{alert.severity}",
            org_id=alert.context.get("org_id"),
            level="error" if alert.severity in (SEVERITY_ERROR, SEVERITY_CRITICAL) else "warning",
            details={"title": alert.title, "message": alert.message, "context": alert.context,
                     "stripe_event_id": alert.context.get("stripe_event_id")},
        )
        if self.webhook_url:
            self._post(alert)

        if alert.dedup_key:
            self._recent.add(alert.dedup_key)
        return True

    def _post(self, alert: Alert) -> None:
        text = f"[{alert.severity.upper()}] {alert.title}: {alert.message}"
        try:
            resp = self._session.post(
                self.webhook_url,
                json={"text": text, "context": alert.context},
                timeout=self.http_timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            current_app.logger.warning("alert webhook delivery failed: %s", exc)

    # ---- pre-built alerts ----
    def payment_failed(self, org_id: int, invoice_id: str, message: str, stripe_event_id: Optional[str] = None) -> bool:
        return self.send(Alert(
            severity=SEVERITY_WARNING,
            title="Stripe Payment Failed",
            message=f"Invoice {invoice_id} payment failed: {message}",
            context={"org_id": org_id, "invoice_id": invoice_id, "stripe_event_id": stripe_event_id},
            dedup_key=f"stripe_fail_{invoice_id}",
        ))

    def subscription_canceled(self, org_id: int, subscription_id: str, reason: Optional[str] = None,
                              stripe_event_id: Optional[str] = None) -> bool:
        return self.send(Alert(
            severity=SEVERITY_WARNING,
            title="Subscription Canceled",
            message=f"Subscription {subscription_id} canceled" + (f" ({reason})" if reason else ""),
            context={"org_id": org_id, "subscription_id": subscription_id, "reason": reason,
                     "stripe_event_id": stripe_event_id},
            dedup_key=f"sub_canceled_{subscription_id}",
        ))

    def webhook_critical_error(self, stripe_event_id: Optional[str], error: str) -> bool:
        return self.send(Alert(
            severity=SEVERITY_CRITICAL,
            title="Stripe Webhook Failure",
            message=f"Webhook pipeline failed: {error}",
            context={"stripe_event_id": stripe_event_id},
            dedup_key=f"webhook_critical_{stripe_event_id}" if stripe_event_id else None,
        ))


def get_alerts() -> AlertSink:
    return current_app.extensions["alerts"]
