"""
Provider webhook payloads.

Stripe events arrive as loosely shaped JSON. Each recognized ``type`` is
narrowed into a small model carrying only the fields reconciliation reads;
everything else becomes ``UnknownEvent`` with the raw payload kept for the
audit trail.
"""
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel

from perdexa.utils.dates import from_unix


def _dict(value) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(value) -> Dict[str, Any]:
    return _dict(value[0]) if isinstance(value, list) and value else {}


def _obj(payload: Dict[str, Any]) -> Dict[str, Any]:
    return _dict(_dict(payload.get("data")).get("object"))


def _ref(value) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value if isinstance(value, str) and value else None


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    return _first(_dict(obj.get("items")).get("data"))


def _minor_to_amount(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(int(value)) / 100
    except (TypeError, ValueError):
        return None


class ProviderSubscriptionSnapshot(BaseModel):
    """The subscription fields a provider event may carry."""
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None  # provider vocabulary, mapped later
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    trial_end: Optional[datetime] = None

    @classmethod
    def from_stripe(cls, obj: Dict[str, Any]) -> "ProviderSubscriptionSnapshot":
        item = _first_item(obj)
        price = item.get("price") or obj.get("plan") or {}
        # Newer API versions moved the period onto the subscription item
        period_start = obj.get("current_period_start", item.get("current_period_start"))
        period_end = obj.get("current_period_end", item.get("current_period_end"))
        cancel_flag = obj.get("cancel_at_period_end")
        return cls(
            subscription_id=_ref(obj.get("id")),
            customer_id=_ref(obj.get("customer")),
            status=obj.get("status") if isinstance(obj.get("status"), str) else None,
            price_id=_ref(price),
            current_period_start=from_unix(period_start),
            current_period_end=from_unix(period_end),
            cancel_at_period_end=cancel_flag if isinstance(cancel_flag, bool) else None,
            trial_end=from_unix(obj.get("trial_end")),
        )


class ProviderEventBase(BaseModel):
    id: str
    type: str
    tenant_hint: Optional[str] = None  # metadata.tenant_id / client_reference_id
    customer_id: Optional[str] = None


class CheckoutCompleted(ProviderEventBase):
    type: Literal["checkout.session.completed"] = "checkout.session.completed"
    subscription_id: Optional[str] = None
    payment_status: Optional[str] = None
    price_id: Optional[str] = None


class SubscriptionUpdated(ProviderEventBase):
    type: Literal["customer.subscription.created", "customer.subscription.updated"] = "customer.subscription.updated"
    snapshot: ProviderSubscriptionSnapshot


class SubscriptionDeleted(ProviderEventBase):
    type: Literal["customer.subscription.deleted"] = "customer.subscription.deleted"
    snapshot: ProviderSubscriptionSnapshot


class InvoicePaid(ProviderEventBase):
    type: Literal["invoice.paid", "invoice.payment_succeeded"] = "invoice.paid"
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    period_end: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class InvoicePaymentFailed(ProviderEventBase):
    type: Literal["invoice.payment_failed"] = "invoice.payment_failed"
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    period_end: Optional[datetime] = None


class UnknownEvent(ProviderEventBase):
    raw: Dict[str, Any]


WebhookEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    UnknownEvent,
]


def _tenant_hint(obj: Dict[str, Any]) -> Optional[str]:
    hint = _dict(obj.get("metadata")).get("tenant_id") or obj.get("client_reference_id")
    if not hint:
        # Invoices carry the subscription's metadata under subscription_details
        hint = _dict(_dict(obj.get("subscription_details")).get("metadata")).get("tenant_id")
    return str(hint) if hint else None


def _invoice_fields(obj: Dict[str, Any]) -> Dict[str, Any]:
    line_period = _dict(_first(_dict(obj.get("lines")).get("data")).get("period"))
    amount = obj.get("amount_paid")
    if not amount:
        amount = obj.get("amount_due")
    currency = obj.get("currency")
    return {
        "invoice_id": _ref(obj.get("id")),
        "subscription_id": _ref(obj.get("subscription")),
        "amount": _minor_to_amount(amount),
        "currency": currency.upper() if isinstance(currency, str) else None,
        "period_end": from_unix(line_period.get("end", obj.get("period_end"))),
    }


def parse_event(payload: Dict[str, Any]) -> WebhookEvent:
    """Narrow a verified event payload to its typed variant."""
    event_type = payload.get("type") if isinstance(payload.get("type"), str) else ""
    event_id = str(payload.get("id") or "")
    obj = _obj(payload)
    common = {
        "id": event_id,
        "tenant_hint": _tenant_hint(obj),
        "customer_id": _ref(obj.get("customer")),
    }

    if event_type == "checkout.session.completed":
        metadata = _dict(obj.get("metadata"))
        return CheckoutCompleted(
            **common,
            subscription_id=_ref(obj.get("subscription")),
            payment_status=obj.get("payment_status"),
            price_id=metadata.get("price_id"),
        )
    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return SubscriptionUpdated(**common, type=event_type, snapshot=ProviderSubscriptionSnapshot.from_stripe(obj))
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(**common, snapshot=ProviderSubscriptionSnapshot.from_stripe(obj))
    if event_type in ("invoice.paid", "invoice.payment_succeeded"):
        transitions = _dict(obj.get("status_transitions"))
        return InvoicePaid(**common, type=event_type, paid_at=from_unix(transitions.get("paid_at")), **_invoice_fields(obj))
    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(**common, **_invoice_fields(obj))
    return UnknownEvent(**common, type=event_type or "unknown", raw=payload)
