"""
Idempotency ledger for Stripe deliveries.

Stripe delivers at least once, sometimes in parallel. The unique index on
``stripe_events.stripe_event_id`` decides who runs an event the first time; a
conditional UPDATE decides who may run it again after a failed attempt. No
in-process locking: several workers or hosts can share the table.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import current_app
from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError

from backoffice.extensions import db
from backoffice.models import StripeEventRecord
from .stripe_events import Event


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LedgerResult:
    already_processed: bool
    record: Optional[StripeEventRecord]


def check_and_record(event: Event, org_id: Optional[int], lease_seconds: Optional[int] = None) -> LedgerResult:
    """
    Insert the ledger row for ``event`` or claim the existing unfinished one.

    Returns ``already_processed=False`` to exactly one concurrent caller; every
    other caller (finished event, or another delivery holding a live claim)
    gets ``True`` and must not touch state.
    """
    if lease_seconds is None:
        lease_seconds = current_app.config.get("WEBHOOK_CLAIM_LEASE_SECONDS", 300)
    now = utcnow()

    record = StripeEventRecord(
        stripe_event_id=event.id,
        type=event.type,
        org_id=org_id,
        payload=event.raw or {},
        claimed_at=now,
    )
    db.session.add(record)
    try:
        db.session.commit()
        return LedgerResult(already_processed=False, record=record)
    except IntegrityError:
        db.session.rollback()

    # Seen before. Take it over only if unfinished and nobody is working on it.
    cutoff = now - timedelta(seconds=lease_seconds)
    values = {"claimed_at": now, "attempts": StripeEventRecord.attempts + 1}
    if org_id is not None:
        values["org_id"] = org_id
    stmt = (
        update(StripeEventRecord)
        .where(
            StripeEventRecord.stripe_event_id == event.id,
            StripeEventRecord.processed_at.is_(None),
            or_(StripeEventRecord.claimed_at.is_(None), StripeEventRecord.claimed_at < cutoff),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    claimed = db.session.execute(stmt).rowcount == 1
    db.session.commit()

    existing = db.session.query(StripeEventRecord).filter_by(stripe_event_id=event.id).one_or_none()
    return LedgerResult(already_processed=not claimed, record=existing)


def stage_processed(record: StripeEventRecord) -> None:
    """Finalize inside the caller's transaction; committed together with the state changes."""
    record.processed_at = utcnow()
    record.claimed_at = None


def mark_processed(record: StripeEventRecord, notes: Optional[str] = None) -> None:
    stage_processed(record)
    if notes:
        record.notes = notes[:255]
    db.session.commit()


def release_claim(record_id: int, notes: Optional[str] = None) -> None:
    """Leave the row unfinished but claimable, so Stripe's redelivery runs it again."""
    values = {"claimed_at": None}
    if notes:
        values["notes"] = notes[:255]
    db.session.execute(
        update(StripeEventRecord)
        .where(StripeEventRecord.id == record_id, StripeEventRecord.processed_at.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def pending_records(limit: int = 50):
    return (
        db.session.query(StripeEventRecord)
        .filter(StripeEventRecord.processed_at.is_(None))
        .order_by(StripeEventRecord.created_at.asc(), StripeEventRecord.id.asc())
        .limit(limit)
        .all()
    )
