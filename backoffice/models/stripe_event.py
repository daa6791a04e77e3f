from sqlalchemy import func
from backoffice.extensions import db

class StripeEventRecord(db.Model):
    """
    Idempotency ledger: one row per Stripe event id that passed signature checks.

    ``processed_at`` is NULL until every state change of the event has committed.
    ``claimed_at`` marks a delivery currently working on the event.
    """

    __tablename__ = "stripe_events"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="SET NULL"), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    attempts = db.Column(db.Integer, nullable=False, server_default=db.text("1"))
    notes = db.Column(db.String(255), nullable=True)

    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    def __repr__(self) -> str:
        return f"<StripeEventRecord {self.stripe_event_id} type={self.type!r} processed={self.is_processed}>"
