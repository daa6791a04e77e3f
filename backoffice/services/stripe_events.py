"""
Typed view of Stripe webhook events.

Stripe posts loosely typed nested JSON. ``parse_event`` converts it once, at the
boundary, into an ``Event`` whose ``payload`` is one variant per object kind, so
the handlers never dig through raw dicts.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

# Event types the engine acts on
CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Value of metadata["domain"] on checkout sessions created for order payments
DOMAIN_ORDER = "order"
DOMAIN_BILLING = "billing"

ORG_METADATA_KEYS = ("organizationId", "orgId", "org_id")
ORDER_METADATA_KEYS = ("orderId", "order_id")


class MalformedEventError(ValueError):
    """Signed body that is not a usable Stripe event (bad JSON, missing id/type)."""


def _ts(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _ref_id(value: Any) -> Optional[str]:
    """Stripe fields like ``customer`` are either an id string or an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, Mapping):
        inner = value.get("id")
        return inner if isinstance(inner, str) and inner else None
    return None


def _metadata(value: Any) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


def _object(value: Any, what: str) -> Mapping[str, Any]:
    """A nested Stripe object: absent is empty, anything but a mapping is malformed."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise MalformedEventError(f"{what} is not an object")
    return value


def _first(meta: Mapping[str, str], keys) -> Optional[str]:
    for key in keys:
        val = (meta.get(key) or "").strip()
        if val:
            return val
    return None


def extract_period_end(sub: Mapping[str, Any]) -> Optional[datetime]:
    """current_period_end lives on the first subscription item in newer API versions."""
    if not isinstance(sub, Mapping):
        return None
    items = sub.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        found = _ts(data[0].get("current_period_end"))
        if found:
            return found
    return _ts(sub.get("current_period_end"))


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    payment_status: Optional[str]  # paid | unpaid | no_payment_required
    payment_intent_id: Optional[str]
    amount_total: Optional[int]
    currency: Optional[str]
    customer_email: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def payment_confirmed(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class Invoice:
    invoice_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount_paid: Optional[int]
    amount_due: Optional[int]
    currency: Optional[str]
    attempt_count: Optional[int]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    customer_id: Optional[str]
    status: str
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    ended_at: Optional[datetime]
    cancellation_reason: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OtherObject:
    object_id: Optional[str]
    object_type: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)


Payload = Union[CheckoutSession, Invoice, Subscription, OtherObject]


@dataclass(frozen=True)
class Event:
    id: str
    type: str
    domain: str
    payload: Payload
    created: Optional[datetime] = None
    livemode: bool = False
    # Decoded body as received; stored on the ledger row for forensics
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    # Identifiers the tenant resolver walks through, in order
    @property
    def subscription_id(self) -> Optional[str]:
        return getattr(self.payload, "subscription_id", None)

    @property
    def customer_id(self) -> Optional[str]:
        return getattr(self.payload, "customer_id", None)

    @property
    def metadata(self) -> Dict[str, str]:
        return getattr(self.payload, "metadata", {}) or {}

    @property
    def metadata_org_id(self) -> Optional[str]:
        return _first(self.metadata, ORG_METADATA_KEYS)

    @property
    def metadata_order_id(self) -> Optional[str]:
        return _first(self.metadata, ORDER_METADATA_KEYS)

    @property
    def is_order_domain(self) -> bool:
        return self.domain == DOMAIN_ORDER

    def log_context(self) -> Dict[str, Any]:
        return {
            "event_id": self.id,
            "event_type": self.type,
            "domain": self.domain,
            "livemode": self.livemode,
        }


def _parse_checkout(obj: Mapping[str, Any]) -> CheckoutSession:
    return CheckoutSession(
        session_id=_ref_id(obj.get("id")) or "",
        customer_id=_ref_id(obj.get("customer")),
        subscription_id=_ref_id(obj.get("subscription")),
        payment_status=obj.get("payment_status"),
        payment_intent_id=_ref_id(obj.get("payment_intent")),
        amount_total=obj.get("amount_total"),
        currency=obj.get("currency"),
        customer_email=(obj.get("customer_email")
                        or _object(obj.get("customer_details"), "customer_details").get("email")),
        metadata=_metadata(obj.get("metadata")),
    )


def _parse_invoice(obj: Mapping[str, Any]) -> Invoice:
    # Newer API versions nest the subscription under parent.subscription_details
    parent = _object(obj.get("parent"), "invoice parent")
    details = _object(parent.get("subscription_details"), "invoice parent.subscription_details")
    meta = _metadata(details.get("metadata"))
    meta.update(_metadata(obj.get("metadata")))
    return Invoice(
        invoice_id=_ref_id(obj.get("id")) or "",
        customer_id=_ref_id(obj.get("customer")),
        subscription_id=_ref_id(details.get("subscription")) or _ref_id(obj.get("subscription")),
        amount_paid=obj.get("amount_paid"),
        amount_due=obj.get("amount_due"),
        currency=obj.get("currency"),
        attempt_count=obj.get("attempt_count"),
        metadata=meta,
    )


def _parse_subscription(obj: Mapping[str, Any]) -> Subscription:
    return Subscription(
        subscription_id=_ref_id(obj.get("id")) or "",
        customer_id=_ref_id(obj.get("customer")),
        status=str(obj.get("status") or ""),
        current_period_end=extract_period_end(obj),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=_ts(obj.get("canceled_at")),
        ended_at=_ts(obj.get("ended_at")),
        cancellation_reason=_object(obj.get("cancellation_details"), "cancellation_details").get("reason"),
        metadata=_metadata(obj.get("metadata")),
    )


def _parse_other(obj: Mapping[str, Any]) -> OtherObject:
    return OtherObject(
        object_id=_ref_id(obj.get("id")),
        object_type=obj.get("object"),
        customer_id=_ref_id(obj.get("customer")),
        subscription_id=_ref_id(obj.get("subscription")),
        metadata=_metadata(obj.get("metadata")),
    )


_PARSERS = {
    "checkout.session": _parse_checkout,
    "invoice": _parse_invoice,
    "customer.subscription": _parse_subscription,
}


def parse_event(raw: Mapping[str, Any]) -> Event:
    """Build a typed Event from a decoded Stripe event body."""
    if not isinstance(raw, Mapping):
        raise MalformedEventError("event body is not an object")
    ev_id = raw.get("id")
    ev_type = raw.get("type")
    if not isinstance(ev_id, str) or not ev_id or not isinstance(ev_type, str) or not ev_type:
        raise MalformedEventError("event is missing id or type")

    data = _object(raw.get("data"), "event data")
    obj = _object(data.get("object"), "event data.object")

    prefix = ev_type.rsplit(".", 1)[0]
    payload = _PARSERS.get(prefix, _parse_other)(obj)

    domain = DOMAIN_BILLING
    if (getattr(payload, "metadata", {}) or {}).get("domain") == DOMAIN_ORDER:
        domain = DOMAIN_ORDER

    return Event(
        id=ev_id,
        type=ev_type,
        domain=domain,
        payload=payload,
        created=_ts(raw.get("created")),
        livemode=bool(raw.get("livemode")),
        raw=dict(raw),
    )
