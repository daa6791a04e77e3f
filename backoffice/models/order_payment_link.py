from sqlalchemy import func, CheckConstraint
from backoffice.extensions import db

LINK_ACTIVE = "active"
LINK_COMPLETED = "completed"
LINK_EXPIRED = "expired"

class OrderPaymentLink(db.Model):
    """One Stripe Checkout Session issued for an order; active -> completed | expired."""

    __tablename__ = "order_payment_links"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_checkout_session_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    status = db.Column(db.String(20), nullable=False, server_default=LINK_ACTIVE)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True)
    url = db.Column(db.Text, nullable=True)
    amount_cents = db.Column(db.Integer, nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    order = db.relationship("Order", back_populates="payment_links")

    __table_args__ = (
        CheckConstraint("status IN ('active','completed','expired')", name="ck_order_payment_links_status_valid"),
    )

    def __repr__(self) -> str:
        return f"<OrderPaymentLink {self.stripe_checkout_session_id} order_id={self.order_id} status={self.status!r}>"
