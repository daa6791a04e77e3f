from sqlalchemy import func, CheckConstraint
from backoffice.extensions import db

BILLING_INACTIVE = "inactive"
BILLING_INCOMPLETE = "incomplete"
BILLING_ACTIVE = "active"
BILLING_PAST_DUE = "past_due"
BILLING_CANCELED = "canceled"
BILLING_STATUSES = (BILLING_INACTIVE, BILLING_INCOMPLETE, BILLING_ACTIVE, BILLING_PAST_DUE, BILLING_CANCELED)

class OrgBillingState(db.Model):
    """Subscription standing of one org. Written only by the webhook billing handlers."""

    __tablename__ = "org_billing_states"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=False, unique=True, index=True)

    billing_status = db.Column(db.String(20), nullable=False, server_default=BILLING_INACTIVE)
    stripe_customer_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    # Set once, never cleared
    setup_fee_paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "billing_status IN ('inactive','incomplete','active','past_due','canceled')",
            name="ck_org_billing_states_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<OrgBillingState org_id={self.org_id} status={self.billing_status!r} sub={self.stripe_subscription_id!r}>"
