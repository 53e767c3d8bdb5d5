from perdexa.schemas.billing import (
    PayMonthRequest, PayYearRequest, SetPlanRequest, RecordMonthlyPaymentRequest,
    PaymentRequestBody, BillingStateResponse, SweepResponse,
)
from perdexa.schemas.order import (
    OrderCreate, OrderItemsUpdate, OrderPaymentCreate, PaymentReverseRequest,
)
from perdexa.schemas.webhook import WebhookEvent, ProviderSubscriptionSnapshot, parse_event

__all__ = [
    "PayMonthRequest", "PayYearRequest", "SetPlanRequest", "RecordMonthlyPaymentRequest",
    "PaymentRequestBody", "BillingStateResponse", "SweepResponse",
    "OrderCreate", "OrderItemsUpdate", "OrderPaymentCreate", "PaymentReverseRequest",
    "WebhookEvent", "ProviderSubscriptionSnapshot", "parse_event",
]
