from sqlalchemy import Column, String, DateTime, Integer, Boolean, ForeignKey, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
import enum
from datetime import datetime
from perdexa.db.session import Base


class Plan(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Subscription(Base):
    """
    A tenant's billing lifecycle. Exactly one row per tenant, created lazily on
    the first billing touch and never deleted.
    """
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, unique=True, index=True)
    plan = Column(
        SQLEnum(Plan, name="subscription_plan", native_enum=False, length=16, values_callable=_enum_values),
        default=Plan.FREE,
        nullable=False,
    )
    status = Column(
        SQLEnum(SubscriptionStatus, name="subscription_status", native_enum=False, length=32, values_callable=_enum_values),
        default=SubscriptionStatus.TRIALING,
        nullable=False,
        index=True,
    )
    provider = Column(String, default="manual", nullable=False)  # manual, stripe

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    trial_ends_at = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    grace_until = Column(DateTime, nullable=True)

    seats = Column(Integer, default=1, nullable=False)
    seat_limit = Column(Integer, nullable=True)  # null = unlimited

    # Provider references (Stripe customer / subscription / price ids)
    provider_customer_id = Column(String, nullable=True, index=True)
    provider_subscription_id = Column(String, nullable=True, index=True)
    price_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="subscription")
