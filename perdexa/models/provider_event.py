from sqlalchemy import Column, String, DateTime, JSON, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
from perdexa.db.session import Base


class ProviderEvent(Base):
    """Webhook delivery log. One row per provider event id; replays are skipped."""
    __tablename__ = "provider_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(String, default="stripe", nullable=False)
    event_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, index=True)  # checkout.session.completed, invoice.paid, ...
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, nullable=False, index=True)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_provider_events_provider_event"),
    )
