from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, JSON, Index, Enum as SQLEnum, text
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from datetime import datetime
from perdexa.db.session import Base
from perdexa.models.subscription import _enum_values


class InvoiceStatus(str, enum.Enum):
    OPEN = "open"
    PAID = "paid"
    FAILED = "failed"
    VOIDED = "voided"
    REFUNDED = "refunded"


class Invoice(Base):
    """
    Amount due/paid for one billing period. Append-mostly: status may move to
    voided/refunded but rows are never deleted.
    """
    __tablename__ = "invoices"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)
    status = Column(
        SQLEnum(InvoiceStatus, name="invoice_status", native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    amount = Column(Numeric(18, 6), nullable=False)
    currency = Column(String(3), default="TRY", nullable=False)
    provider = Column(String, default="manual", nullable=False)
    provider_invoice_id = Column(String, nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)
    due_at = Column(DateTime, nullable=True, index=True)
    period_key = Column(String(7), nullable=True)  # YYYY-MM of due_at
    raw = Column(JSON, nullable=True)  # audit payload (admin input or provider event)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        # At most one paid invoice per tenant and calendar month
        Index(
            "uq_invoices_paid_tenant_period",
            "tenant_id",
            "period_key",
            unique=True,
            postgresql_where=text("status = 'paid'"),
            sqlite_where=text("status = 'paid'"),
        ),
    )
