"""
Audit trail for billing state changes
"""
import json
import logging
from typing import Optional
import uuid

from sqlalchemy.orm import Session

from perdexa.models.audit_log import AuditLog, AuditEventType

logger = logging.getLogger(__name__)


def log_billing_event(
    db: Session,
    event_type: AuditEventType,
    tenant_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    """
    Add an audit row to the caller's transaction.

    Nothing is committed here: the row lands together with the change it
    describes, or not at all.

    Args:
        db: Database session (transaction owned by the caller)
        event_type: Type of billing event
        tenant_id: Tenant the event belongs to (if any)
        actor_id: User who triggered it (None for provider events and sweeps)
        resource_type: e.g. "subscription", "invoice", "order_payment"
        resource_id: ID of the resource
        details: Additional details (JSON-encoded; non-JSON values are stringified)
    """
    audit_log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=json.dumps(details, default=str) if details else None,
    )
    db.add(audit_log)
    logger.debug(f"[AUDIT] {event_type.value} tenant={tenant_id} {resource_type}={resource_id}")
    return audit_log
