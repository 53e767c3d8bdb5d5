from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, Text, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from datetime import datetime
from perdexa.db.session import Base
from perdexa.models.subscription import _enum_values


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    TRANSFER = "TRANSFER"
    CARD = "CARD"


class OrderPayment(Base):
    """
    A payment applied to an order. Rows are never updated or deleted; a
    correction is a new row with a negative amount pointing at the payment it
    reverses.
    """
    __tablename__ = "order_payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Numeric(18, 6), nullable=False)
    method = Column(
        SQLEnum(PaymentMethod, name="payment_method", native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
    )
    note = Column(Text, nullable=True)
    paid_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    reverses_payment_id = Column(UUID(as_uuid=True), ForeignKey("order_payments.id"), nullable=True, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
