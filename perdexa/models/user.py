from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Numeric
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
from perdexa.db.session import Base


class User(Base):
    """
    A shop user. Also carries the per-user monthly billing track
    (see MonthlyPaymentLedger), which is independent of the tenant subscription.
    """
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=True, index=True)
    email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)  # platform super admin

    # Monthly billing track; null price = settings.MONTHLY_PRICE
    monthly_price = Column(Numeric(18, 6), nullable=True)
    billing_paid_for_month = Column(DateTime, nullable=True)  # first day of the last paid month
    billing_next_due_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
