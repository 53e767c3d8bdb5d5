from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class PayMonthRequest(BaseModel):
    # Loosely typed on purpose: bad values become invalid_year_month, not a 422
    year: Any = None
    month: Any = None
    tenant_id: Optional[str] = None  # body-addressed routes only


class PayYearRequest(BaseModel):
    tenant_id: Optional[str] = None
    year: Any = None
    from_month: Any = 1


class SetPlanRequest(BaseModel):
    plan: str


class RecordMonthlyPaymentRequest(BaseModel):
    month_key: str
    amount: Optional[str] = None  # decimal string; defaults to the user's monthly price


class PaymentRequestBody(BaseModel):
    month_key: str


class SubscriptionOut(BaseModel):
    id: str
    tenant_id: str
    plan: str
    status: str
    provider: str
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    trial_ends_at: Optional[str] = None
    cancel_at_period_end: bool
    seats: int
    seat_limit: Optional[int] = None
    grace_until: Optional[str] = None


class InvoiceOut(BaseModel):
    id: str
    tenant_id: str
    subscription_id: Optional[str] = None
    status: str
    amount: str
    currency: str
    provider: str
    provider_invoice_id: Optional[str] = None
    paid_at: Optional[str] = None
    due_at: Optional[str] = None
    period_key: Optional[str] = None
    created_at: Optional[str] = None


class BillingStateResponse(BaseModel):
    subscription: Optional[SubscriptionOut] = None
    invoices: List[InvoiceOut] = []
    paid: Optional[List[str]] = None  # pay-year only
    skipped: Optional[List[str]] = None


class SweepResponse(BaseModel):
    examined: int
    applied: Dict[str, int]
