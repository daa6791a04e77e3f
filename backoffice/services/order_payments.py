import json
from typing import Optional, Tuple

from flask import current_app

from backoffice.extensions import db
from backoffice.models import OrderPaymentLink, OrderEventLog
from backoffice.models.audit_log import LEVEL_INFO, LEVEL_ERROR
from backoffice.models.order import ORDER_CONFIRMED, PAYMENT_PAID, PAYMENT_PENDING, PAYMENT_EXPIRED
from backoffice.models.order_payment_link import LINK_COMPLETED, LINK_EXPIRED
from backoffice.observability import get_correlation_id, get_metrics
from . import audit, notifications
from .ledger import utcnow
from .stripe_events import Event, CheckoutSession
from .unit_of_work import PostCommitHooks

OUTCOME_PAID = "paid"
OUTCOME_EXPIRED = "expired"
OUTCOME_ALREADY_DONE = "already_done"
OUTCOME_LINK_NOT_FOUND = "link_not_found"
OUTCOME_ORG_MISMATCH = "org_mismatch"


def _log(level: str, event_name: str, event: Event, **fields):
    getattr(current_app.logger, level)(json.dumps(
        {"event": f"stripe_webhook.{event_name}", "correlation_id": get_correlation_id(),
         **event.log_context(), **fields}, default=str
    ))


def _session(event: Event) -> CheckoutSession:
    if not isinstance(event.payload, CheckoutSession):
        raise ValueError(f"{event.type} does not carry a checkout session")
    return event.payload


def _load_link(event: Event, org_id: int) -> Tuple[Optional[OrderPaymentLink], Optional[str]]:
    """The link for this session, or (None, outcome) after logging why nothing can be done."""
    session = _session(event)
    link = (
        db.session.query(OrderPaymentLink)
        .filter_by(stripe_checkout_session_id=session.session_id)
        .one_or_none()
    )
    if link is None:
        # Upstream bug, not retryable: the session was never recorded here
        _log("error", "order_link_not_found", event, org_id=org_id, session_id=session.session_id)
        audit.record("order.payment_link_not_found", org_id=org_id, event=event, level=LEVEL_ERROR,
                     details={"session_id": session.session_id,
                              "order_id": event.metadata_order_id})
        return None, OUTCOME_LINK_NOT_FOUND
    if link.order.org_id != org_id:
        _log("error", "order_org_mismatch", event, org_id=org_id,
             order_org_id=link.order.org_id, order_id=link.order_id)
        audit.record("order.org_mismatch", org_id=org_id, event=event, level=LEVEL_ERROR,
                     details={"session_id": session.session_id, "order_id": link.order_id,
                              "order_org_id": link.order.org_id})
        return None, OUTCOME_ORG_MISMATCH
    return link, None


def handle_checkout_completed(event: Event, org_id: int, hooks: PostCommitHooks) -> str:
    """
    Customer paid through an order payment link.

    Link, order, event log and audit entry are staged together; the customer SMS and the
    business notification are queued as post-commit hooks.
    """
    link, outcome = _load_link(event, org_id)
    if link is None:
        return outcome

    if link.status == LINK_COMPLETED:
        _log("info", "order_payment_replay", event, org_id=org_id, order_id=link.order_id)
        audit.record("order.payment_replay", org_id=org_id, event=event, level=LEVEL_INFO, details={
            "session_id": link.stripe_checkout_session_id,
            "order_id": link.order_id,
            "link_status": link.status,
        })
        return OUTCOME_ALREADY_DONE

    session = _session(event)
    order = link.order
    now = utcnow()
    previous_link_status = link.status
    previous_payment_status = order.payment_status

    link.status = LINK_COMPLETED
    link.stripe_payment_intent_id = session.payment_intent_id or link.stripe_payment_intent_id

    order.payment_status = PAYMENT_PAID
    order.status = ORDER_CONFIRMED
    order.paid_at = order.paid_at or now
    order.confirmed_at = order.confirmed_at or now

    db.session.add(OrderEventLog(order_id=order.id, type="payment_paid", details={
        "stripe_event_id": event.id,
        "session_id": session.session_id,
        "payment_intent_id": session.payment_intent_id,
        "amount_total": session.amount_total,
        "currency": session.currency,
        "previous_link_status": previous_link_status,
        "previous_payment_status": previous_payment_status,
    }))
    db.session.add(OrderEventLog(order_id=order.id, type="confirmed", details={
        "stripe_event_id": event.id,
        "reason": "payment_completed",
    }))

    audit.record("order.payment_completed", org_id=org_id, event=event, level=LEVEL_INFO, details={
        "session_id": session.session_id,
        "order_id": order.id,
        "payment_intent_id": session.payment_intent_id,
        "previous_link_status": previous_link_status,
        "previous_payment_status": previous_payment_status,
    })
    get_metrics().increment("stripe.order.payments.paid", org_id=org_id)
    _log("info", "order_paid", event, org_id=org_id, order_id=order.id)

    order_id = order.id
    hooks.add("order.customer_confirmation", lambda: notifications.send_order_confirmation(order_id))
    hooks.add("order.business_notification", lambda: notifications.notify_business(org_id, order_id))
    return OUTCOME_PAID


def handle_checkout_expired(event: Event, org_id: int, hooks: PostCommitHooks) -> str:
    link, outcome = _load_link(event, org_id)
    if link is None:
        return outcome

    if link.status in (LINK_COMPLETED, LINK_EXPIRED):
        _log("info", "order_expiry_ignored", event, org_id=org_id, order_id=link.order_id, link_status=link.status)
        audit.record("order.expiry_ignored", org_id=org_id, event=event, level=LEVEL_INFO, details={
            "session_id": link.stripe_checkout_session_id,
            "order_id": link.order_id,
            "link_status": link.status,
        })
        return OUTCOME_ALREADY_DONE

    order = link.order
    previous_payment_status = order.payment_status
    link.status = LINK_EXPIRED

    # A payment completed through another link for this order stays paid
    if order.payment_status == PAYMENT_PENDING:
        order.payment_status = PAYMENT_EXPIRED

    db.session.add(OrderEventLog(order_id=order.id, type="payment_expired", details={
        "stripe_event_id": event.id,
        "session_id": link.stripe_checkout_session_id,
        "attempt_number": order.payment_attempt_count,
        "previous_payment_status": previous_payment_status,
        "new_payment_status": order.payment_status,
    }))

    audit.record("order.payment_expired", org_id=org_id, event=event, level=LEVEL_INFO, details={
        "session_id": link.stripe_checkout_session_id,
        "order_id": order.id,
        "previous_payment_status": previous_payment_status,
        "new_payment_status": order.payment_status,
    })
    get_metrics().increment("stripe.order.payments.expired", org_id=org_id)
    _log("info", "order_link_expired", event, org_id=org_id, order_id=order.id,
         payment_status=order.payment_status)
    return OUTCOME_EXPIRED

