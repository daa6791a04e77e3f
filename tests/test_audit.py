from datetime import datetime, timezone

from backoffice.extensions import db
from backoffice.models import AuditLog
from backoffice.observability import bind_correlation_id
from backoffice.services import audit


def test_entries_are_staged_until_the_caller_commits(ctx, typed_event):
    event = typed_event("invoice.paid", {"id": "in_1"}, event_id="evt_audit_1")
    audit.record("billing.invoice_paid", event=event)
    db.session.rollback()
    assert audit.entries_for_event("evt_audit_1") == []


def test_details_are_made_json_safe_and_tagged_with_the_event(ctx, typed_event):
    event = typed_event("invoice.paid", {"id": "in_1"}, event_id="evt_audit_2")
    when = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    audit.record("billing.invoice_paid", event=event, details={"period_end": when}, commit=True)

    entry = audit.entries_for_event("evt_audit_2")[0]
    assert entry.details["period_end"] == str(when)
    assert entry.details["event_type"] == "invoice.paid"
    assert entry.stripe_event_id == "evt_audit_2"


def test_entries_carry_the_bound_correlation_id(ctx):
    bind_correlation_id("req-audit-9")
    entry = audit.record("billing.unmapped_event", level="warning", commit=True)
    assert entry.details["correlation_id"] == "req-audit-9"


def test_audit_rows_pin_their_org():
    fk = next(iter(AuditLog.__table__.c.org_id.foreign_keys))
    assert fk.column.table.name == "orgs"
    # Deleting an org must never rewrite its audit trail
    assert fk.ondelete == "RESTRICT"
