from datetime import datetime, timezone
from backoffice.extensions import db

class OrderEventLog(db.Model):
    __tablename__ = "order_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False, index=True)  # payment_paid|confirmed|payment_expired|...
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)

    order = db.relationship("Order", back_populates="events")

    def __repr__(self) -> str:
        return f"<OrderEventLog id={self.id} order_id={self.order_id} type={self.type!r}>"
