from sqlalchemy import func, CheckConstraint
from backoffice.extensions import db

ORDER_DRAFT = "draft"
ORDER_PENDING_CONFIRMATION = "pending_confirmation"
ORDER_PENDING_PAYMENT = "pending_payment"
ORDER_CONFIRMED = "confirmed"
ORDER_EXPIRED = "expired"
ORDER_CANCELED = "canceled"

PAYMENT_NOT_REQUIRED = "not_required"
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_EXPIRED = "expired"
PAYMENT_CANCELED = "canceled"

class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True)
    channel = db.Column(db.String(20), nullable=False, server_default="sms")  # sms|whatsapp|voice

    status = db.Column(db.String(32), nullable=False, server_default=ORDER_DRAFT, index=True)
    payment_status = db.Column(db.String(20), nullable=False, server_default=PAYMENT_NOT_REQUIRED, index=True)
    payment_attempt_count = db.Column(db.Integer, nullable=False, server_default=db.text("0"))

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=False, index=True)
    customer_email = db.Column(db.String(320), nullable=True)
    summary_text = db.Column(db.Text, nullable=False, default="")
    pickup_time = db.Column(db.DateTime(timezone=True), nullable=True)
    amount_total_cents = db.Column(db.Integer, nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    payment_links = db.relationship("OrderPaymentLink", back_populates="order", lazy="select")
    events = db.relationship("OrderEventLog", back_populates="order", lazy="select", order_by="OrderEventLog.id")

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('not_required','pending','paid','failed','expired','canceled')",
            name="ck_orders_payment_status_valid",
        ),
    )

    @property
    def short_id(self) -> str:
        return f"#{self.id:05d}" if self.id else "#-----"

    def __repr__(self) -> str:
        return f"<Order id={self.id} org_id={self.org_id} status={self.status!r} payment={self.payment_status!r}>"
