from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Text, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
import enum
from perdexa.db.session import Base


class AuditEventType(str, enum.Enum):
    """Billing events recorded in the audit trail"""
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_TRANSITIONED = "subscription_transitioned"
    PLAN_CHANGED = "plan_changed"
    SUBSCRIPTION_SYNCED = "subscription_synced"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    INVOICE_VOIDED = "invoice_voided"
    INVOICE_REFUNDED = "invoice_refunded"
    ORDER_PAYMENT_ADDED = "order_payment_added"
    ORDER_PAYMENT_REVERSED = "order_payment_reversed"
    MONTHLY_PAYMENT_RECORDED = "monthly_payment_recorded"
    WEBHOOK_IGNORED = "webhook_ignored"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=True, index=True)
    actor_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    event_type = Column(SQLEnum(AuditEventType, native_enum=False, length=64), nullable=False, index=True)
    resource_type = Column(String, nullable=True)  # e.g. "subscription", "invoice", "order"
    resource_id = Column(String, nullable=True)
    details = Column(Text, nullable=True)  # JSON string with additional details
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
