"""Create orgs, billing state, stripe event ledger, audit log and order payment tables"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1c4e2b7d901"
down_revision = None
branch_labels = None
depends_on = None

def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]

def upgrade():
    op.create_table(
        "orgs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("notification_email", sa.String(length=320), nullable=True),
        sa.Column("notification_phone", sa.String(length=32), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "org_billing_states",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("billing_status", sa.String(length=20), nullable=False, server_default="inactive"),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("setup_fee_paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "billing_status IN ('inactive','incomplete','active','past_due','canceled')",
            name="ck_org_billing_states_status_valid",
        ),
    )
    op.create_index("ix_org_billing_states_org_id", "org_billing_states", ["org_id"], unique=True)
    op.create_index("ix_org_billing_states_stripe_customer_id", "org_billing_states", ["stripe_customer_id"], unique=True)
    op.create_index("ix_org_billing_states_stripe_subscription_id", "org_billing_states", ["stripe_subscription_id"], unique=True)

    op.create_table(
        "stripe_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=80), nullable=False),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("orgs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("notes", sa.String(length=255), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    # The unique index is what makes a delivery the first one
    op.create_index("ix_stripe_events_stripe_event_id", "stripe_events", ["stripe_event_id"], unique=True)
    op.create_index("ix_stripe_events_type", "stripe_events", ["type"])
    op.create_index("ix_stripe_events_org_id", "stripe_events", ["org_id"])
    op.create_index("ix_stripe_events_created_at", "stripe_events", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("actor", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("level", sa.String(length=10), nullable=False),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_org_id", "audit_logs", ["org_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_stripe_event_id", "audit_logs", ["stripe_event_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False, server_default="sms"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("payment_status", sa.String(length=20), nullable=False, server_default="not_required"),
        sa.Column("payment_attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("customer_phone", sa.String(length=32), nullable=False),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("summary_text", sa.Text(), nullable=False),
        sa.Column("pickup_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("amount_total_cents", sa.Integer(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "payment_status IN ('not_required','pending','paid','failed','expired','canceled')",
            name="ck_orders_payment_status_valid",
        ),
    )
    op.create_index("ix_orders_org_id", "orders", ["org_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_payment_status", "orders", ["payment_status"])
    op.create_index("ix_orders_customer_phone", "orders", ["customer_phone"])

    op.create_table(
        "order_payment_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stripe_checkout_session_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('active','completed','expired')", name="ck_order_payment_links_status_valid"),
    )
    op.create_index("ix_order_payment_links_order_id", "order_payment_links", ["order_id"])
    op.create_index(
        "ix_order_payment_links_stripe_checkout_session_id",
        "order_payment_links", ["stripe_checkout_session_id"], unique=True,
    )

    op.create_table(
        "order_event_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_order_event_logs_order_id", "order_event_logs", ["order_id"])
    op.create_index("ix_order_event_logs_type", "order_event_logs", ["type"])
    op.create_index("ix_order_event_logs_created_at", "order_event_logs", ["created_at"])

def downgrade():
    op.drop_table("order_event_logs")
    op.drop_table("order_payment_links")
    op.drop_table("orders")
    op.drop_table("audit_logs")
    op.drop_table("stripe_events")
    op.drop_table("org_billing_states")
    op.drop_table("orgs")
