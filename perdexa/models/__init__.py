from perdexa.models.tenant import Tenant
from perdexa.models.user import User
from perdexa.models.subscription import Subscription, Plan, SubscriptionStatus
from perdexa.models.invoice import Invoice, InvoiceStatus
from perdexa.models.order import Order, OrderItem, OrderExtra
from perdexa.models.order_payment import OrderPayment, PaymentMethod
from perdexa.models.payment import Payment
from perdexa.models.provider_event import ProviderEvent
from perdexa.models.audit_log import AuditLog, AuditEventType

__all__ = [
    "Tenant", "User", "Subscription", "Plan", "SubscriptionStatus",
    "Invoice", "InvoiceStatus", "Order", "OrderItem", "OrderExtra",
    "OrderPayment", "PaymentMethod", "Payment", "ProviderEvent",
    "AuditLog", "AuditEventType",
]
