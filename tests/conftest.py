import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import json
import time

import pytest
from backoffice import create_app
from backoffice.extensions import db
from backoffice.services.stripe_events import parse_event

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="session")
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "MAIL_SUPPRESS_SEND": True,
        "STRIPE_SECRET_KEY": None,
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "ALERT_WEBHOOK_URL": None,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture()
def ctx(app):
    """An app context for tests that call services directly."""
    with app.app_context():
        yield app
        db.session.rollback()

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    app.extensions["metrics"].reset()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


# ---- Stripe-format signing ----
def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"

@pytest.fixture()
def sign():
    return stripe_signature

@pytest.fixture()
def deliver(client):
    """POST a signed event dict to the webhook; returns the response."""
    def _deliver(event, secret=WEBHOOK_SECRET, timestamp=None, headers=None):
        body = json.dumps(event)
        return client.post(
            "/webhooks/stripe",
            data=body,
            headers={"Stripe-Signature": stripe_signature(body, secret, timestamp),
                     "Content-Type": "application/json", **(headers or {})},
        )
    return _deliver


# ---- event builders ----
_counter = {"n": 0}

def _event_id():
    _counter["n"] += 1
    return f"evt_test_{_counter['n']:05d}"

@pytest.fixture()
def make_event():
    def _make(ev_type, obj, event_id=None, created=None):
        return {
            "id": event_id or _event_id(),
            "object": "event",
            "type": ev_type,
            "created": created or int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
    return _make

@pytest.fixture()
def typed_event(make_event):
    """Same as make_event but already parsed into an Event."""
    def _typed(ev_type, obj, **kw):
        return parse_event(make_event(ev_type, obj, **kw))
    return _typed


# ---- collaborator fakes ----
class FakeAlerts:
    def __init__(self):
        self.calls = []

    def send(self, alert):
        self.calls.append(("send", alert.title))
        return True

    def payment_failed(self, org_id, invoice_id, message, stripe_event_id=None):
        self.calls.append(("payment_failed", org_id, invoice_id))
        return True

    def subscription_canceled(self, org_id, subscription_id, reason=None, stripe_event_id=None):
        self.calls.append(("subscription_canceled", org_id, subscription_id))
        return True

    def webhook_critical_error(self, stripe_event_id, error):
        self.calls.append(("webhook_critical_error", stripe_event_id))
        return True

    def names(self):
        return [c[0] for c in self.calls]

class FakeMessaging:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, to, body):
        if self.fail:
            raise RuntimeError("sms gateway down")
        self.sent.append((to, body))
        return "SM123"

class FakeNotifier:
    def __init__(self):
        self.notified = []

    def notify_order_paid(self, org, order):
        self.notified.append((org.id, order.id))
        return True

@pytest.fixture()
def alerts(app, monkeypatch):
    fake = FakeAlerts()
    monkeypatch.setitem(app.extensions, "alerts", fake)
    return fake

@pytest.fixture()
def messaging(app, monkeypatch):
    fake = FakeMessaging()
    monkeypatch.setitem(app.extensions, "messaging", fake)
    return fake

@pytest.fixture()
def notifier(app, monkeypatch):
    fake = FakeNotifier()
    monkeypatch.setitem(app.extensions, "business_notifier", fake)
    return fake

@pytest.fixture()
def metrics(app):
    return app.extensions["metrics"]


# ---- row factories (call inside an app context) ----
class Factory:
    def org(self, name="Pizzeria Test", **kw):
        from backoffice.models import Org
        org = Org(name=name, **kw)
        db.session.add(org)
        db.session.commit()
        return org

    def billing(self, org, **kw):
        from backoffice.models import OrgBillingState
        state = OrgBillingState(org_id=org.id, **kw)
        db.session.add(state)
        db.session.commit()
        return state

    def order(self, org, **kw):
        from backoffice.models import Order
        from backoffice.models.order import ORDER_PENDING_PAYMENT, PAYMENT_PENDING
        kw.setdefault("status", ORDER_PENDING_PAYMENT)
        kw.setdefault("payment_status", PAYMENT_PENDING)
        kw.setdefault("payment_attempt_count", 1)
        kw.setdefault("customer_phone", "+33600000001")
        kw.setdefault("customer_name", "Alice")
        kw.setdefault("summary_text", "1x Margherita")
        order = Order(org_id=org.id, **kw)
        db.session.add(order)
        db.session.commit()
        return order

    def link(self, order, session_id, **kw):
        from backoffice.models import OrderPaymentLink
        link = OrderPaymentLink(order_id=order.id, stripe_checkout_session_id=session_id, **kw)
        db.session.add(link)
        db.session.commit()
        return link

@pytest.fixture()
def factory():
    return Factory()
