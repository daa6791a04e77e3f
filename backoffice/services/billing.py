"""
Subscription billing state, driven by Stripe events.

``transition`` is pure: it takes a snapshot of the org's billing row plus the
event and returns the new snapshot, the audit entry and the alert to raise.
``apply_billing_event`` does the I/O around it (load row, optional Stripe
fetch, stage writes) without committing; the dispatcher owns the commit.
"""
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional

import stripe
from flask import current_app
from stripe import StripeClient

from backoffice.extensions import db
from backoffice.models import OrgBillingState
from backoffice.models.audit_log import LEVEL_INFO, LEVEL_WARNING
from backoffice.models.billing_state import (
    BILLING_INACTIVE, BILLING_INCOMPLETE, BILLING_ACTIVE, BILLING_PAST_DUE, BILLING_CANCELED,
)
from backoffice.observability import get_correlation_id, get_metrics
from . import audit
from .alerts import get_alerts
from .ledger import utcnow
from .stripe_events import (
    Event, CheckoutSession, Invoice, Subscription, extract_period_end,
    CHECKOUT_COMPLETED, INVOICE_PAID, INVOICE_PAYMENT_FAILED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED,
)
from .unit_of_work import Deadline, PostCommitHooks

BILLING_EVENT_TYPES = (
    CHECKOUT_COMPLETED, INVOICE_PAID, INVOICE_PAYMENT_FAILED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED,
)

# Every subscription status Stripe documents, and where it lands
STATUS_MAP = {
    "active": BILLING_ACTIVE,
    "trialing": BILLING_ACTIVE,
    "past_due": BILLING_PAST_DUE,
    "unpaid": BILLING_PAST_DUE,
    "paused": BILLING_PAST_DUE,
    "canceled": BILLING_CANCELED,
    "incomplete_expired": BILLING_CANCELED,
    "incomplete": BILLING_INCOMPLETE,
}
UNKNOWN_STATUS_FALLBACK = BILLING_INACTIVE

ALERT_PAYMENT_FAILED = "payment_failed"
ALERT_SUBSCRIPTION_CANCELED = "subscription_canceled"


def map_subscription_status(stripe_status: str):
    """Returns (internal_status, known)."""
    mapped = STATUS_MAP.get((stripe_status or "").strip().lower())
    if mapped is None:
        return UNKNOWN_STATUS_FALLBACK, False
    return mapped, True


@dataclass(frozen=True)
class BillingSnapshot:
    status: str = BILLING_INACTIVE
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    setup_fee_paid_at: Optional[datetime] = None

    @classmethod
    def of(cls, row: Optional[OrgBillingState]) -> "BillingSnapshot":
        if row is None:
            return cls()
        return cls(
            status=row.billing_status or BILLING_INACTIVE,
            subscription_id=row.stripe_subscription_id,
            customer_id=row.stripe_customer_id,
            current_period_end=row.current_period_end,
            setup_fee_paid_at=row.setup_fee_paid_at,
        )


@dataclass(frozen=True)
class AuditEntry:
    action: str
    level: str = LEVEL_INFO
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BillingTransition:
    state: BillingSnapshot
    audit: AuditEntry
    alert: Optional[str] = None


def _checkout_completed(cur: BillingSnapshot, s: CheckoutSession, now, period_end) -> BillingTransition:
    new = cur
    if s.subscription_id:
        new = replace(new, subscription_id=s.subscription_id)
    if s.customer_id and not new.customer_id:
        new = replace(new, customer_id=s.customer_id)
    if s.payment_confirmed:
        new = replace(new, status=BILLING_ACTIVE)
        if new.setup_fee_paid_at is None:
            new = replace(new, setup_fee_paid_at=now)
    if period_end:
        new = replace(new, current_period_end=period_end)
    return BillingTransition(new, AuditEntry("billing.checkout_completed", details={
        "session_id": s.session_id,
        "subscription_id": s.subscription_id,
        "customer_id": s.customer_id,
        "payment_status": s.payment_status,
        "previous_status": cur.status,
        "new_status": new.status,
        "amount_total": s.amount_total,
        "currency": s.currency,
    }))


def _invoice_paid(cur: BillingSnapshot, inv: Invoice, now, period_end) -> BillingTransition:
    new = replace(cur, status=BILLING_ACTIVE)
    if period_end:
        new = replace(new, current_period_end=period_end)
    if new.setup_fee_paid_at is None:
        new = replace(new, setup_fee_paid_at=now)
    return BillingTransition(new, AuditEntry("billing.invoice_paid", details={
        "invoice_id": inv.invoice_id,
        "subscription_id": inv.subscription_id,
        "previous_status": cur.status,
        "new_status": BILLING_ACTIVE,
        "amount_paid": inv.amount_paid,
        "currency": inv.currency,
        "period_end": period_end,
    }))


def _invoice_failed(cur: BillingSnapshot, inv: Invoice, now, period_end) -> BillingTransition:
    new = replace(cur, status=BILLING_PAST_DUE)
    return BillingTransition(new, AuditEntry("billing.invoice_failed", details={
        "invoice_id": inv.invoice_id,
        "subscription_id": inv.subscription_id,
        "previous_status": cur.status,
        "new_status": BILLING_PAST_DUE,
        "amount_due": inv.amount_due,
        "currency": inv.currency,
        "attempt_count": inv.attempt_count,
    }), alert=ALERT_PAYMENT_FAILED)


def _subscription_updated(cur: BillingSnapshot, sub: Subscription, now, period_end) -> BillingTransition:
    status, known = map_subscription_status(sub.status)
    new = replace(cur, status=status, subscription_id=sub.subscription_id or cur.subscription_id)
    period_end = period_end or sub.current_period_end
    if period_end:
        new = replace(new, current_period_end=period_end)
    details = {
        "subscription_id": sub.subscription_id,
        "stripe_status": sub.status,
        "previous_status": cur.status,
        "new_status": status,
        "period_end": period_end,
        "cancel_at_period_end": sub.cancel_at_period_end,
    }
    if not known:
        details["unknown_status"] = True
    return BillingTransition(new, AuditEntry(
        "billing.subscription_updated",
        level=LEVEL_INFO if known else LEVEL_WARNING,
        details=details,
    ))


def _subscription_deleted(cur: BillingSnapshot, sub: Subscription, now, period_end) -> BillingTransition:
    new = replace(cur, status=BILLING_CANCELED)
    return BillingTransition(new, AuditEntry("billing.subscription_canceled", details={
        "subscription_id": sub.subscription_id,
        "previous_status": cur.status,
        "new_status": BILLING_CANCELED,
        "canceled_at": sub.canceled_at,
        "ended_at": sub.ended_at,
        "reason": sub.cancellation_reason,
    }), alert=ALERT_SUBSCRIPTION_CANCELED)


_TRANSITIONS = {
    CHECKOUT_COMPLETED: (CheckoutSession, _checkout_completed),
    INVOICE_PAID: (Invoice, _invoice_paid),
    INVOICE_PAYMENT_FAILED: (Invoice, _invoice_failed),
    SUBSCRIPTION_UPDATED: (Subscription, _subscription_updated),
    SUBSCRIPTION_DELETED: (Subscription, _subscription_deleted),
}


def transition(current: BillingSnapshot, event: Event, *, now: datetime,
               period_end: Optional[datetime] = None) -> BillingTransition:
    """Pure billing transition. Raises ValueError for event types billing does not own."""
    try:
        expected, fn = _TRANSITIONS[event.type]
    except KeyError:
        raise ValueError(f"not a billing event: {event.type}")
    if not isinstance(event.payload, expected):
        raise ValueError(f"{event.type} carries {type(event.payload).__name__}, expected {expected.__name__}")
    return fn(current, event.payload, now, period_end)


# ---- Stripe access ----
def _client() -> StripeClient:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    timeout = current_app.config.get("STRIPE_API_TIMEOUT", 10)
    return StripeClient(key, http_client=stripe.RequestsClient(timeout=timeout))


def fetch_period_end(subscription_id: str) -> Optional[datetime]:
    """
    Best effort: read current_period_end off the live subscription.

    Any Stripe failure (including timeout) or a missing API key degrades to
    None; the transition goes ahead without the optional field.
    """
    try:
        client = _client()
        subs = getattr(client, "v1", client).subscriptions
        sub = subs.retrieve(subscription_id)
    except (stripe.StripeError, RuntimeError) as exc:
        current_app.logger.warning(json.dumps({
            "event": "stripe_webhook.period_end_unavailable",
            "correlation_id": get_correlation_id(),
            "subscription_id": subscription_id,
            "error": f"{type(exc).__name__}: {exc}",
        }))
        return None
    if hasattr(sub, "to_dict_recursive"):
        sub = sub.to_dict_recursive()
    elif hasattr(sub, "to_dict"):
        sub = sub.to_dict()
    return extract_period_end(sub)


def _period_end_for(event: Event) -> Optional[datetime]:
    if event.type in (CHECKOUT_COMPLETED, INVOICE_PAID) and event.subscription_id:
        return fetch_period_end(event.subscription_id)
    return None


def _store(row: OrgBillingState, snap: BillingSnapshot) -> None:
    row.billing_status = snap.status
    row.stripe_subscription_id = snap.subscription_id
    row.stripe_customer_id = snap.customer_id
    row.current_period_end = snap.current_period_end
    # write-once
    if row.setup_fee_paid_at is None:
        row.setup_fee_paid_at = snap.setup_fee_paid_at


def apply_billing_event(event: Event, org_id: int, hooks: PostCommitHooks,
                        deadline: Optional[Deadline] = None) -> BillingTransition:
    """Stage the billing row and its audit entry in the current session; no commit."""
    row = db.session.query(OrgBillingState).filter_by(org_id=org_id).one_or_none()
    if row is None:
        row = OrgBillingState(org_id=org_id, billing_status=BILLING_INACTIVE)
        db.session.add(row)

    period_end = _period_end_for(event)
    if deadline is not None:
        deadline.check("billing.fetch_period_end")

    result = transition(BillingSnapshot.of(row), event, now=utcnow(), period_end=period_end)
    _store(row, result.state)
    audit.record(result.audit.action, org_id=org_id, event=event,
                 level=result.audit.level, details=result.audit.details)

    metrics = get_metrics()
    metrics.increment("stripe.billing.events", org_id=org_id, event_type=event.type, status=result.state.status)
    if result.audit.details.get("unknown_status"):
        metrics.increment("stripe.billing.unknown_status", org_id=org_id)

    if result.alert == ALERT_PAYMENT_FAILED:
        metrics.increment("stripe.invoice.payments.failed", org_id=org_id)
        inv = event.payload
        hooks.add("alert.payment_failed", lambda: get_alerts().payment_failed(
            org_id, inv.invoice_id,
            f"Invoice payment failed after {inv.attempt_count or 0} attempts",
            stripe_event_id=event.id,
        ))
    elif result.alert == ALERT_SUBSCRIPTION_CANCELED:
        sub = event.payload
        hooks.add("alert.subscription_canceled", lambda: get_alerts().subscription_canceled(
            org_id, sub.subscription_id, reason=sub.cancellation_reason, stripe_event_id=event.id,
        ))

    current_app.logger.info(json.dumps({
        "event": "stripe_webhook.billing_applied",
        "correlation_id": get_correlation_id(),
        **event.log_context(),
        "org_id": org_id,
        "action": result.audit.action,
        "new_status": result.state.status,
    }, default=str))
    return result
