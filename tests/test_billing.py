from datetime import datetime, timedelta, timezone

import pytest
import stripe

from backoffice.extensions import db
from backoffice.models import AuditLog, OrgBillingState
from backoffice.services import billing
from backoffice.services.billing import BillingSnapshot, map_subscription_status, transition
from backoffice.services.unit_of_work import PostCommitHooks

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
EARLIER = datetime(2025, 12, 24, 9, 30, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 4, 1, tzinfo=timezone.utc)


def _naive(dt):
    # SQLite hands DateTime(timezone=True) back without tzinfo
    return dt.replace(tzinfo=None) if dt else None


# ---- pure transitions ----
def test_paid_checkout_activates_and_stamps_setup_fee(typed_event):
    event = typed_event("checkout.session.completed", {
        "id": "cs_1", "payment_status": "paid", "subscription": "sub_1", "customer": "cus_1",
        "amount_total": 19900, "currency": "eur",
    })
    result = transition(BillingSnapshot(), event, now=NOW, period_end=PERIOD_END)
    assert result.state.status == "active"
    assert result.state.setup_fee_paid_at == NOW
    assert result.state.subscription_id == "sub_1"
    assert result.state.customer_id == "cus_1"
    assert result.state.current_period_end == PERIOD_END
    assert result.audit.action == "billing.checkout_completed"
    assert result.audit.details["previous_status"] == "inactive"
    assert result.audit.details["new_status"] == "active"
    assert result.alert is None


def test_unpaid_checkout_leaves_status_alone(typed_event):
    event = typed_event("checkout.session.completed", {"id": "cs_1", "payment_status": "unpaid", "subscription": "sub_1"})
    result = transition(BillingSnapshot(status="incomplete"), event, now=NOW)
    assert result.state.status == "incomplete"
    assert result.state.setup_fee_paid_at is None
    assert result.state.subscription_id == "sub_1"


def test_checkout_keeps_an_existing_customer_id(typed_event):
    event = typed_event("checkout.session.completed", {"id": "cs_1", "payment_status": "paid", "customer": "cus_new"})
    result = transition(BillingSnapshot(customer_id="cus_old"), event, now=NOW)
    assert result.state.customer_id == "cus_old"


def test_setup_fee_is_written_once_across_any_sequence(typed_event):
    events = [
        typed_event("invoice.paid", {"id": "in_1"}),
        typed_event("checkout.session.completed", {"id": "cs_1", "payment_status": "paid"}),
        typed_event("invoice.payment_failed", {"id": "in_2"}),
        typed_event("invoice.paid", {"id": "in_3"}),
    ]
    state = BillingSnapshot()
    stamps = []
    for i, event in enumerate(events):
        state = transition(state, event, now=NOW + timedelta(days=i)).state
        stamps.append(state.setup_fee_paid_at)
    assert stamps == [NOW] * 4


def test_invoice_paid_forces_active_and_refreshes_period(typed_event):
    event = typed_event("invoice.paid", {"id": "in_1", "amount_paid": 4900, "currency": "eur"})
    result = transition(BillingSnapshot(status="past_due", setup_fee_paid_at=EARLIER), event,
                        now=NOW, period_end=PERIOD_END)
    assert result.state.status == "active"
    assert result.state.current_period_end == PERIOD_END
    assert result.state.setup_fee_paid_at == EARLIER
    assert result.audit.action == "billing.invoice_paid"


def test_failed_invoice_goes_past_due_and_asks_for_an_alert(typed_event):
    event = typed_event("invoice.payment_failed", {"id": "in_1", "attempt_count": 3})
    result = transition(BillingSnapshot(status="active"), event, now=NOW)
    assert result.state.status == "past_due"
    assert result.state.setup_fee_paid_at is None
    assert result.alert == billing.ALERT_PAYMENT_FAILED
    assert result.audit.details["attempt_count"] == 3


@pytest.mark.parametrize("stripe_status,expected", [
    ("active", "active"),
    ("trialing", "active"),
    ("past_due", "past_due"),
    ("unpaid", "past_due"),
    ("paused", "past_due"),
    ("canceled", "canceled"),
    ("incomplete_expired", "canceled"),
    ("incomplete", "incomplete"),
])
def test_status_mapping_is_total_for_known_statuses(stripe_status, expected):
    assert map_subscription_status(stripe_status) == (expected, True)


def test_unknown_subscription_status_falls_back_and_is_flagged(typed_event):
    event = typed_event("customer.subscription.updated", {"id": "sub_1", "status": "on_vacation"})
    result = transition(BillingSnapshot(status="active"), event, now=NOW)
    assert result.state.status == "inactive"
    assert result.audit.level == "warning"
    assert result.audit.details["unknown_status"] is True
    assert result.audit.details["stripe_status"] == "on_vacation"


def test_subscription_update_uses_the_event_period(typed_event):
    event = typed_event("customer.subscription.updated", {
        "id": "sub_2", "status": "active", "current_period_end": int(PERIOD_END.timestamp()),
    })
    result = transition(BillingSnapshot(subscription_id="sub_1"), event, now=NOW)
    assert result.state.subscription_id == "sub_2"
    assert result.state.current_period_end == PERIOD_END
    assert result.audit.level == "info"


def test_subscription_deleted_cancels_and_keeps_the_setup_fee(typed_event):
    event = typed_event("customer.subscription.deleted", {
        "id": "sub_1", "status": "canceled", "cancellation_details": {"reason": "cancellation_requested"},
    })
    result = transition(BillingSnapshot(status="active", setup_fee_paid_at=EARLIER), event, now=NOW)
    assert result.state.status == "canceled"
    assert result.state.setup_fee_paid_at == EARLIER
    assert result.audit.action == "billing.subscription_canceled"
    assert result.alert == billing.ALERT_SUBSCRIPTION_CANCELED


def test_non_billing_event_is_refused(typed_event):
    with pytest.raises(ValueError):
        transition(BillingSnapshot(), typed_event("charge.refunded", {"id": "ch_1"}), now=NOW)


# ---- period end lookup ----
class _FakeSubs:
    def __init__(self, exc=None):
        self.exc = exc
        self.asked = []

    def retrieve(self, sub_id):
        self.asked.append(sub_id)
        if self.exc:
            raise self.exc
        return {"id": sub_id, "items": {"data": [{"current_period_end": int(PERIOD_END.timestamp())}]}}

class _FakeClient:
    def __init__(self, subs):
        self.subscriptions = subs


def test_fetch_period_end_reads_the_live_subscription(ctx, monkeypatch):
    subs = _FakeSubs()
    monkeypatch.setattr(billing, "_client", lambda: _FakeClient(subs))
    assert billing.fetch_period_end("sub_1") == PERIOD_END
    assert subs.asked == ["sub_1"]


def test_fetch_period_end_degrades_on_stripe_errors(ctx, monkeypatch):
    subs = _FakeSubs(exc=stripe.APIConnectionError("timed out"))
    monkeypatch.setattr(billing, "_client", lambda: _FakeClient(subs))
    assert billing.fetch_period_end("sub_1") is None


def test_fetch_period_end_without_api_key_is_none(ctx):
    # The test app runs without STRIPE_SECRET_KEY
    assert billing.fetch_period_end("sub_1") is None


# ---- staged application ----
def test_apply_creates_the_billing_row_and_stages_the_audit_entry(ctx, typed_event, factory, monkeypatch):
    org = factory.org()
    monkeypatch.setattr(billing, "fetch_period_end", lambda sub_id: PERIOD_END)
    event = typed_event("invoice.paid", {"id": "in_1", "subscription": "sub_1"})

    billing.apply_billing_event(event, org.id, PostCommitHooks())
    db.session.commit()

    state = db.session.query(OrgBillingState).filter_by(org_id=org.id).one()
    assert state.billing_status == "active"
    assert _naive(state.current_period_end) == _naive(PERIOD_END)
    assert state.setup_fee_paid_at is not None
    entry = db.session.query(AuditLog).filter_by(action="billing.invoice_paid").one()
    assert entry.org_id == org.id
    assert entry.stripe_event_id == event.id


def test_apply_queues_the_cancellation_alert_after_commit(ctx, typed_event, factory, alerts):
    org = factory.org()
    factory.billing(org, billing_status="active", stripe_subscription_id="sub_1")
    event = typed_event("customer.subscription.deleted", {"id": "sub_1", "status": "canceled"})

    hooks = PostCommitHooks()
    billing.apply_billing_event(event, org.id, hooks)
    assert alerts.calls == []
    assert hooks.names == ["alert.subscription_canceled"]
    db.session.commit()
    hooks.run()
    assert alerts.calls == [("subscription_canceled", org.id, "sub_1")]


# ---- over HTTP ----
def test_checkout_completed_scenario(app, deliver, make_event, factory, monkeypatch):
    with app.app_context():
        org_id = factory.org().id
    monkeypatch.setattr(billing, "fetch_period_end", lambda sub_id: PERIOD_END)

    resp = deliver(make_event("checkout.session.completed", {
        "id": "cs_sub_1", "payment_status": "paid", "subscription": "sub_1", "customer": "cus_1",
        "metadata": {"organizationId": str(org_id)},
    }))
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}

    with app.app_context():
        state = db.session.query(OrgBillingState).filter_by(org_id=org_id).one()
        assert state.billing_status == "active"
        assert state.setup_fee_paid_at is not None
        assert state.stripe_subscription_id == "sub_1"
        assert state.stripe_customer_id == "cus_1"
        assert db.session.query(AuditLog).filter_by(action="billing.checkout_completed").count() == 1


def test_invoice_failed_scenario(app, deliver, make_event, factory, alerts, metrics):
    with app.app_context():
        org = factory.org()
        org_id = org.id
        factory.billing(org, billing_status="active", stripe_subscription_id="sub_1",
                        stripe_customer_id="cus_1", setup_fee_paid_at=EARLIER)

    resp = deliver(make_event("invoice.payment_failed", {
        "id": "in_fail_1", "customer": "cus_1", "attempt_count": 1,
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    }))
    assert resp.status_code == 200

    with app.app_context():
        state = db.session.query(OrgBillingState).filter_by(org_id=org_id).one()
        assert state.billing_status == "past_due"
        assert _naive(state.setup_fee_paid_at) == _naive(EARLIER)
    assert alerts.calls == [("payment_failed", org_id, "in_fail_1")]
    assert metrics.value("stripe.invoice.payments.failed") == 1


def test_unknown_status_is_counted(app, deliver, make_event, factory, metrics):
    with app.app_context():
        factory.billing(factory.org(), billing_status="active", stripe_subscription_id="sub_1")

    deliver(make_event("customer.subscription.updated", {"id": "sub_1", "status": "brand_new_status"}))

    assert metrics.value("stripe.billing.unknown_status") == 1
    with app.app_context():
        entry = db.session.query(AuditLog).filter_by(action="billing.subscription_updated").one()
        assert entry.level == "warning"
