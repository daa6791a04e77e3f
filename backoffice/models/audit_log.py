from datetime import datetime, timezone
from backoffice.extensions import db

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"

class AuditLog(db.Model):
    """Append-only record of every billing decision. Rows are never updated or deleted."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=True, index=True)
    actor = db.Column(db.String(64), nullable=False, default="system")
    action = db.Column(db.String(80), nullable=False, index=True)  # e.g. billing.invoice_paid
    level = db.Column(db.String(10), nullable=False, default=LEVEL_INFO)
    stripe_event_id = db.Column(db.String(255), nullable=True, index=True)
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} action={self.action!r} org_id={self.org_id}>"
