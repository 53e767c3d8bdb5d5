from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
from perdexa.db.session import Base


class Payment(Base):
    """
    Per-user monthly payment, recorded by an operator. Independent of the
    tenant subscription/invoice machinery.
    """
    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    month_key = Column(String(7), nullable=False)  # YYYY-MM
    amount = Column(Numeric(18, 6), nullable=False)
    currency = Column(String(3), default="TRY", nullable=False)
    status = Column(String, default="paid", nullable=False)
    paid_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    recorded_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "month_key", name="uq_payments_user_month"),
    )
