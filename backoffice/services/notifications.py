import json
import smtplib
import time
from typing import Optional

import requests
from flask import current_app
from flask_mail import Connection, Message

from backoffice.extensions import db
from backoffice.models import Org, Order

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def _log_structured(event: str, level: str = "info", **fields):
    payload = {"event": event, **fields}
    getattr(current_app.logger, level)(json.dumps(payload, default=str))


class TwilioSmsSender:
    """Customer-facing SMS through the Twilio REST API."""

    def __init__(self, account_sid: Optional[str], auth_token: Optional[str], from_number: Optional[str],
                 timeout: float = 5, session: Optional[requests.Session] = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "TwilioSmsSender":
        return cls(
            account_sid=config.get("TWILIO_ACCOUNT_SID"),
            auth_token=config.get("TWILIO_AUTH_TOKEN"),
            from_number=config.get("TWILIO_FROM_NUMBER"),
            timeout=config.get("MESSAGING_HTTP_TIMEOUT", 5),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send(self, to: str, body: str) -> Optional[str]:
        """Returns the message SID, or None when messaging is not configured."""
        if not self.enabled:
            _log_structured("sms_send", outcome="disabled", to=to)
            return None
        start = time.perf_counter()
        resp = self._session.post(
            TWILIO_MESSAGES_URL.format(sid=self.account_sid),
            data={"To": to, "From": self.from_number, "Body": body},
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        sid = (resp.json() or {}).get("sid")
        _log_structured("sms_send", outcome="sent", to=to, sid=sid,
                        latency_ms=int((time.perf_counter() - start) * 1000))
        return sid


class SmtpConnection(Connection):
    """
    Flask-Mail connection whose SMTP socket is bounded by ``timeout``.

    Flask-Mail opens ``smtplib.SMTP`` without one, and business mail is sent
    while Stripe is still waiting for the webhook answer.
    """

    def __init__(self, state, timeout: float):
        super().__init__(state)
        self.timeout = timeout

    def configure_host(self):
        m = self.mail
        if m.use_ssl:
            host = smtplib.SMTP_SSL(m.server, m.port, timeout=self.timeout)
        else:
            host = smtplib.SMTP(m.server, m.port, timeout=self.timeout)
        host.set_debuglevel(int(m.debug))
        if m.use_tls:
            host.starttls()
        if m.username and m.password:
            host.login(m.username, m.password)
        return host


class MailBusinessNotifier:
    """Tells the business a paid order is ready, by email to the org's notification address."""

    def notify_order_paid(self, org: Org, order: Order) -> bool:
        if not org.notification_email:
            _log_structured("business_notify", outcome="no_recipient", org_id=org.id, order_id=order.id)
            return False
        msg = Message(
            recipients=[org.notification_email],
            subject=f"New paid order {order.short_id}",
        )
        msg.body = (
            f"Order {order.short_id} has been paid and confirmed.\n\n"
            f"Customer: {order.customer_name or '-'} ({order.customer_phone})\n"
            f"Pickup: {format_pickup_time(order)}\n\n"
            f"{order.summary_text}\n"
        )
        timeout = current_app.config.get("MAIL_TIMEOUT", 10)
        with SmtpConnection(current_app.extensions["mail"], timeout) as conn:
            conn.send(msg)
        _log_structured("business_notify", outcome="sent", org_id=org.id, order_id=order.id)
        return True


def format_pickup_time(order: Order) -> str:
    if not order.pickup_time:
        return "as soon as possible"
    return order.pickup_time.strftime("%H:%M")


def confirmation_text(order: Order) -> str:
    greeting = f"Thanks {order.customer_name}!" if order.customer_name else "Thanks!"
    return (
        f"{greeting} Payment received, your order {order.short_id} is confirmed. "
        f"Pickup: {format_pickup_time(order)}."
    )


def send_order_confirmation(order_id: int) -> Optional[str]:
    """Post-commit hook: customer confirmation SMS."""
    order = db.session.get(Order, order_id)
    if order is None or not order.customer_phone:
        return None
    return current_app.extensions["messaging"].send(order.customer_phone, confirmation_text(order))


def notify_business(org_id: int, order_id: int) -> bool:
    """Post-commit hook: business notification for a newly paid order."""
    org = db.session.get(Org, org_id)
    order = db.session.get(Order, order_id)
    if org is None or order is None:
        return False
    return current_app.extensions["business_notifier"].notify_order_paid(org, order)
