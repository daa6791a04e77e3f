from .org import Org
from .billing_state import OrgBillingState
from .stripe_event import StripeEventRecord
from .audit_log import AuditLog
from .order import Order
from .order_payment_link import OrderPaymentLink
from .order_event_log import OrderEventLog

__all__ = [
    "Org",
    "OrgBillingState",
    "StripeEventRecord",
    "AuditLog",
    "Order",
    "OrderPaymentLink",
    "OrderEventLog",
]
