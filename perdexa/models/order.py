from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
from datetime import datetime
from perdexa.db.session import Base


class Order(Base):
    """
    A customer order. ``total``, ``discount`` and ``net_total`` are derived
    columns, rewritten from the item/extra rows by OrderTotals.
    """
    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    status = Column(String, default="pending", nullable=False)  # pending, processing, completed, cancelled
    customer_name = Column(String, nullable=True)
    note = Column(Text, nullable=True)

    total = Column(Numeric(18, 6), default=0, nullable=False)
    discount = Column(Numeric(18, 6), default=0, nullable=False)
    net_total = Column(Numeric(18, 6), default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.created_at")
    extras = relationship("OrderExtra", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    qty = Column(Integer, nullable=False)
    width = Column(Integer, nullable=False)  # cm
    height = Column(Integer, nullable=False)  # cm
    unit_price = Column(Numeric(18, 6), nullable=False)
    file_density = Column(Numeric(10, 4), default=1, nullable=False)
    subtotal = Column(Numeric(18, 6), nullable=False)  # computed server side, never taken from input
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="items")


class OrderExtra(Base):
    """Accessory/extra lines billed on an order (rails, installation...)."""
    __tablename__ = "order_extras"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    label = Column(String, nullable=False)
    subtotal = Column(Numeric(18, 6), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="extras")
