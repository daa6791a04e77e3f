import json
from typing import Optional

import stripe

from .stripe_events import Event, MalformedEventError, parse_event


class WebhookRejected(Exception):
    """Request refused before any state is touched (HTTP 400, no ledger row)."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail


def verify_and_parse(raw_body: bytes, sig_header: Optional[str], secret: Optional[str], tolerance: int = 300) -> Event:
    """
    Check the Stripe-Signature header against the raw body, then decode it.

    Stripe signs ``"{t}.{body}"`` with HMAC-SHA256; the SDK recomputes it, compares
    in constant time and rejects timestamps older than ``tolerance`` seconds.
    """
    if not secret:
        raise WebhookRejected("webhook_secret_not_configured")
    if not sig_header:
        raise WebhookRejected("missing_signature")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise WebhookRejected("invalid_payload", "body is not utf-8")

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookRejected("invalid_signature", str(exc))

    try:
        body = json.loads(payload)
    except ValueError as exc:
        raise WebhookRejected("invalid_payload", str(exc))

    try:
        return parse_event(body)
    except MalformedEventError as exc:
        raise WebhookRejected("malformed_event", str(exc))
