"""
One Stripe delivery from raw body to HTTP answer.

verify -> resolve org -> ledger claim -> route -> single commit -> post-commit hooks

Response codes tell Stripe what to do next:

- 400: request refused before any state was touched
- 200: done, duplicate, unmapped, or handler failed (claim released, Stripe redelivers)
- 500: the pipeline itself is broken; Stripe retries the whole delivery
"""
import json
from typing import Any, Dict, Optional, Tuple

from flask import current_app

from backoffice.extensions import db
from backoffice.models.audit_log import LEVEL_INFO, LEVEL_WARNING, LEVEL_ERROR
from backoffice.observability import bind_correlation_id, get_correlation_id, get_metrics
from . import audit, billing, ledger, order_payments, tenant
from .alerts import get_alerts
from .stripe_events import Event, CHECKOUT_COMPLETED, CHECKOUT_EXPIRED
from .unit_of_work import Deadline, PostCommitHooks
from .verifier import WebhookRejected, verify_and_parse

Response = Tuple[Dict[str, Any], int]

ROUTE_BILLING = "billing"
ROUTE_ORDER_COMPLETED = "order.checkout_completed"
ROUTE_ORDER_EXPIRED = "order.checkout_expired"
ROUTE_IGNORED = "ignored"


def route_for(event: Event) -> str:
    """Pick the state machine. checkout.session.* is shared; the domain tag decides."""
    if event.type == CHECKOUT_COMPLETED:
        return ROUTE_ORDER_COMPLETED if event.is_order_domain else ROUTE_BILLING
    if event.type == CHECKOUT_EXPIRED:
        return ROUTE_ORDER_EXPIRED if event.is_order_domain else ROUTE_IGNORED
    if event.type in billing.BILLING_EVENT_TYPES:
        return ROUTE_BILLING
    return ROUTE_IGNORED


def dispatch(event: Event, org_id: int, hooks: PostCommitHooks, deadline: Optional[Deadline] = None) -> str:
    """Stage the state changes for ``event``. Returns the route taken; nothing is committed here."""
    route = route_for(event)
    if route == ROUTE_BILLING:
        billing.apply_billing_event(event, org_id, hooks, deadline)
    elif route == ROUTE_ORDER_COMPLETED:
        order_payments.handle_checkout_completed(event, org_id, hooks)
    elif route == ROUTE_ORDER_EXPIRED:
        order_payments.handle_checkout_expired(event, org_id, hooks)
    else:
        _log("info", "unhandled", **event.log_context())
    return route


def _log(level: str, name: str, **fields) -> None:
    payload = {"event": f"stripe_webhook.{name}", "correlation_id": get_correlation_id(), **fields}
    getattr(current_app.logger, level)(json.dumps(payload, default=str))


def _process(event: Event, deadline: Deadline) -> Response:
    metrics = get_metrics()
    metrics.increment("stripe.webhook.received", event_type=event.type)

    org_id = tenant.resolve(event)
    claim = ledger.check_and_record(event, org_id)
    if claim.already_processed:
        existing = claim.record
        state = "processed" if existing is not None and existing.processed_at is not None else "in_flight"
        # Committed on its own; no state change rides with it
        audit.try_record("billing.duplicate_event", org_id=org_id, event=event, level=LEVEL_INFO, details={
            "ledger_state": state,
            "attempts": existing.attempts if existing is not None else None,
        })
        metrics.increment("stripe.webhook.duplicates", event_type=event.type)
        _log("info", "duplicate", **event.log_context(), ledger_state=state)
        return {"received": True, "skipped": True}, 200

    record = claim.record
    record_id = record.id

    if org_id is None:
        audit.record("billing.unmapped_event", event=event, level=LEVEL_WARNING, details={
            "customer_id": event.customer_id,
            "subscription_id": event.subscription_id,
            "metadata_org_id": event.metadata_org_id,
            "metadata_order_id": event.metadata_order_id,
        })
        ledger.stage_processed(record)
        record.notes = "unmapped"
        db.session.commit()
        metrics.increment("stripe.webhook.unmapped", event_type=event.type)
        _log("warning", "unmapped", **event.log_context())
        return {"received": True, "unmapped": True}, 200

    hooks = PostCommitHooks()
    try:
        route = dispatch(event, org_id, hooks, deadline)
        deadline.check("commit")
        ledger.stage_processed(record)
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        error = f"{type(exc).__name__}: {exc}"
        _log("exception", "handler_error", **event.log_context(), org_id=org_id, error=error)
        audit.try_record("billing.webhook_error", org_id=org_id, event=event, level=LEVEL_ERROR,
                         details={"error": error[:500]})
        ledger.release_claim(record_id, notes=f"handler_error:{type(exc).__name__}")
        metrics.increment("stripe.webhook.errors", event_type=event.type, reason=type(exc).__name__)
        return {"received": True, "retry": True}, 200

    failed = hooks.run()
    _log("info", "processed", **event.log_context(), org_id=org_id, route=route, failed_hooks=failed)
    return {"received": True}, 200


def handle_delivery(raw_body: bytes, sig_header: Optional[str], request_id: Optional[str] = None) -> Response:
    """Entry point for the HTTP boundary. Binds the delivery's correlation id first."""
    bind_correlation_id(request_id)
    cfg = current_app.config
    try:
        event = verify_and_parse(
            raw_body,
            sig_header,
            cfg.get("STRIPE_WEBHOOK_SECRET"),
            tolerance=cfg.get("STRIPE_WEBHOOK_TOLERANCE", 300),
        )
    except WebhookRejected as rej:
        _log("warning", "rejected", reason=rej.reason, detail=rej.detail)
        return {"error": rej.reason}, 400

    deadline = Deadline(cfg.get("WEBHOOK_DEADLINE_SECONDS", 20))
    try:
        return _process(event, deadline)
    except Exception as exc:
        db.session.rollback()
        error = f"{type(exc).__name__}: {exc}"
        _log("exception", "critical_error", **event.log_context(), error=error)
        audit.try_record("billing.webhook_critical_error", event=event, level=LEVEL_ERROR,
                         details={"error": error[:500]})
        try:
            get_alerts().webhook_critical_error(event.id, error)
        except Exception:
            current_app.logger.exception("stripe_webhook.alert_failed")
        return {"error": "webhook_handler_failed"}, 500
