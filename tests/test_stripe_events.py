from datetime import datetime, timezone

import pytest

from backoffice.services.stripe_events import (
    CheckoutSession, Invoice, Subscription, OtherObject, MalformedEventError,
    DOMAIN_ORDER, DOMAIN_BILLING, extract_period_end, parse_event,
)

PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z


def _raw(ev_type, obj, **extra):
    raw = {"id": "evt_p1", "type": ev_type, "created": 1700000000, "data": {"object": obj}}
    raw.update(extra)
    return raw


def test_order_checkout_session_is_tagged_with_the_order_domain():
    event = parse_event(_raw("checkout.session.completed", {
        "id": "cs_1",
        "payment_status": "paid",
        "payment_intent": "pi_1",
        "amount_total": 2450,
        "currency": "eur",
        "metadata": {"domain": "order", "orderId": "12", "organizationId": "3"},
    }))
    assert isinstance(event.payload, CheckoutSession)
    assert event.domain == DOMAIN_ORDER
    assert event.is_order_domain
    assert event.payload.payment_confirmed
    assert event.payload.payment_intent_id == "pi_1"
    assert event.metadata_order_id == "12"
    assert event.metadata_org_id == "3"
    assert event.created == datetime.fromtimestamp(1700000000, tz=timezone.utc)


def test_subscription_checkout_defaults_to_billing_domain_and_accepts_expanded_refs():
    event = parse_event(_raw("checkout.session.completed", {
        "id": "cs_2",
        "payment_status": "unpaid",
        "customer": {"id": "cus_9", "object": "customer"},
        "subscription": "sub_9",
        "metadata": {"org_id": "7"},
    }))
    assert event.domain == DOMAIN_BILLING
    assert not event.payload.payment_confirmed
    assert event.customer_id == "cus_9"
    assert event.subscription_id == "sub_9"
    assert event.metadata_org_id == "7"


def test_invoice_reads_subscription_from_parent_details():
    event = parse_event(_raw("invoice.payment_failed", {
        "id": "in_1",
        "customer": "cus_1",
        "amount_due": 4900,
        "attempt_count": 2,
        "parent": {"subscription_details": {"subscription": "sub_nested", "metadata": {"orgId": "5"}}},
    }))
    assert isinstance(event.payload, Invoice)
    assert event.subscription_id == "sub_nested"
    assert event.metadata_org_id == "5"
    assert event.payload.attempt_count == 2


def test_invoice_falls_back_to_top_level_subscription():
    event = parse_event(_raw("invoice.paid", {"id": "in_2", "subscription": "sub_top"}))
    assert event.subscription_id == "sub_top"


def test_subscription_period_end_prefers_first_item():
    event = parse_event(_raw("customer.subscription.updated", {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "past_due",
        "current_period_end": 1000,
        "items": {"data": [{"current_period_end": PERIOD_END}]},
        "cancellation_details": {"reason": "payment_failed"},
    }))
    assert isinstance(event.payload, Subscription)
    assert event.subscription_id == "sub_1"
    assert event.payload.current_period_end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
    assert event.payload.cancellation_reason == "payment_failed"


def test_extract_period_end_top_level_fallback_and_absent():
    assert extract_period_end({"current_period_end": PERIOD_END}).year == 2026
    assert extract_period_end({"items": {"data": []}}) is None


def test_unknown_object_kinds_still_expose_identifiers():
    event = parse_event(_raw("charge.refunded", {"id": "ch_1", "object": "charge", "customer": "cus_3"}))
    assert isinstance(event.payload, OtherObject)
    assert event.customer_id == "cus_3"
    assert event.subscription_id is None


def test_non_object_data_is_malformed():
    with pytest.raises(MalformedEventError):
        parse_event({"id": "evt_1", "type": "invoice.paid", "data": {"object": "in_1"}})
