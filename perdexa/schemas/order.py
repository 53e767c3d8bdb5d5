from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator

from perdexa.models.order_payment import PaymentMethod


class OrderItemIn(BaseModel):
    id: Optional[UUID] = None  # set to update an existing line
    qty: int
    width: int  # cm
    height: int  # cm
    unit_price: Decimal
    file_density: Decimal = Decimal(1)
    note: Optional[str] = None


class OrderExtraIn(BaseModel):
    label: str
    subtotal: Decimal


class OrderCreate(BaseModel):
    customer_name: Optional[str] = None
    note: Optional[str] = None
    items: List[OrderItemIn] = []
    extras: List[OrderExtraIn] = []
    discount: Decimal = Decimal(0)


class OrderItemsUpdate(BaseModel):
    upserts: List[OrderItemIn] = []
    deletes: List[UUID] = []
    extras: Optional[List[OrderExtraIn]] = None  # replaces all extras when given
    discount: Optional[Decimal] = None


class OrderPaymentCreate(BaseModel):
    amount: Decimal
    method: PaymentMethod
    note: Optional[str] = None
    paid_at: Optional[datetime] = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("paid_at")
    @classmethod
    def naive_utc(cls, v):
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class PaymentReverseRequest(BaseModel):
    note: Optional[str] = None
