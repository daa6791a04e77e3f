import json
from typing import Optional, Tuple

from flask import current_app

from backoffice.extensions import db
from backoffice.models import Org, OrgBillingState, Order
from .stripe_events import Event


def _to_int(value) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _by_subscription(event: Event) -> Optional[int]:
    # For customer.subscription.* this is the object's own id
    sub_id = event.subscription_id
    if not sub_id:
        return None
    state = db.session.query(OrgBillingState).filter_by(stripe_subscription_id=sub_id).one_or_none()
    return state.org_id if state else None


def _by_customer(event: Event) -> Optional[int]:
    if not event.customer_id:
        return None
    state = db.session.query(OrgBillingState).filter_by(stripe_customer_id=event.customer_id).one_or_none()
    return state.org_id if state else None


def _by_metadata(event: Event) -> Optional[int]:
    org_id = _to_int(event.metadata_org_id)
    if org_id is None:
        return None
    return org_id if db.session.get(Org, org_id) is not None else None


def _by_order(event: Event) -> Optional[int]:
    if not event.is_order_domain:
        return None
    order_id = _to_int(event.metadata_order_id)
    if order_id is None:
        return None
    order = db.session.get(Order, order_id)
    return order.org_id if order else None


STRATEGIES = (
    ("subscription_id", _by_subscription),
    ("customer_id", _by_customer),
    ("metadata", _by_metadata),
    ("order_id", _by_order),
)


def resolve_with_strategy(event: Event) -> Tuple[Optional[int], Optional[str]]:
    for name, strategy in STRATEGIES:
        org_id = strategy(event)
        if org_id is not None:
            return org_id, name
    return None, None


def resolve(event: Event) -> Optional[int]:
    """
    Map an event to the owning org: subscription id, then customer id, then
    metadata org id, then (order payments only) metadata order id. None when
    nothing matches; the caller treats that as an unmapped event, not an error.
    """
    org_id, strategy = resolve_with_strategy(event)
    current_app.logger.debug(json.dumps({
        "event": "stripe_webhook.tenant_resolved",
        "event_id": event.id,
        "org_id": org_id,
        "strategy": strategy,
    }))
    return org_id
