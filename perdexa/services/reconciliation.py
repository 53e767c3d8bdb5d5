"""
Entry point for everything that changes a tenant's billing from outside:
signed Stripe webhooks and operator actions from the admin panel.

Webhook flow: verify signature -> parse into a typed event -> skip replays ->
resolve tenant -> dispatch to InvoiceManager / SubscriptionLedger and record
the delivery in ``provider_events``, all in one transaction.
"""
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from perdexa.core.audit import log_billing_event
from perdexa.core.config import settings
from perdexa.core.errors import AuthorizationError, BillingError, NotFoundError, ValidationError
from perdexa.db.session import atomic
from perdexa.models.audit_log import AuditEventType
from perdexa.models.provider_event import ProviderEvent
from perdexa.models.subscription import Subscription
from perdexa.models.tenant import Tenant
from perdexa.schemas.webhook import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    ProviderSubscriptionSnapshot,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
    WebhookEvent,
    parse_event,
)
from perdexa.services.invoice_manager import InvoiceManager, invoice_to_dict
from perdexa.services.subscription_ledger import SubscriptionLedger, subscription_snapshot
from perdexa.utils.dates import utcnow

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


@dataclass
class WebhookResult:
    event_id: str
    type: str
    status: str  # processed, ignored, duplicate, skipped
    tenant_id: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {"received": True, **asdict(self)}


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


class ReconciliationGateway:
    def __init__(self, db: Session):
        self.db = db
        self.invoices = InvoiceManager(db)
        self.ledger = SubscriptionLedger(db)

    # ------------------------------------------------------------- webhooks

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Check the Stripe signature and return the decoded event.
        Nothing is read from the payload before this succeeds.
        """
        secret = settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured; rejecting delivery")
            raise AuthorizationError("invalid_signature", "Webhook secret not configured", status_code=400)
        if not signature:
            logger.warning("[WEBHOOK] Missing stripe-signature header")
            raise AuthorizationError("invalid_signature", "Missing signature", status_code=400)

        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except ValueError as e:
            logger.warning(f"[WEBHOOK] Invalid payload: {e}")
            raise AuthorizationError("invalid_signature", "Invalid payload", status_code=400)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[WEBHOOK] Signature verification failed: {e}")
            raise AuthorizationError("invalid_signature", "Signature verification failed", status_code=400)

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        event = json.loads(payload)
        if not isinstance(event, dict) or not event.get("id"):
            raise AuthorizationError("invalid_signature", "Event has no id", status_code=400)
        return event

    def parse(self, payload: Dict[str, Any]) -> WebhookEvent:
        return parse_event(payload)

    def resolve_tenant(self, event: WebhookEvent) -> Optional[uuid.UUID]:
        """metadata.tenant_id / client_reference_id first, then known provider ids."""
        hinted = _as_uuid(event.tenant_hint) if event.tenant_hint else None
        if hinted is not None and self.db.get(Tenant, hinted) is not None:
            return hinted

        provider_ids = []
        if event.customer_id:
            provider_ids.append(Subscription.provider_customer_id == event.customer_id)
        subscription_id = getattr(event, "subscription_id", None)
        if subscription_id is None and hasattr(event, "snapshot"):
            subscription_id = event.snapshot.subscription_id
        if subscription_id:
            provider_ids.append(Subscription.provider_subscription_id == subscription_id)

        for condition in provider_ids:
            sub = self.db.query(Subscription).filter(condition).first()
            if sub is not None:
                return sub.tenant_id
        return None

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        raw = self.verify(payload, signature)
        event = self.parse(raw)
        logger.info(f"[WEBHOOK] Received {event.type} ({event.id})")

        seen = (
            self.db.query(ProviderEvent)
            .filter(ProviderEvent.provider == PROVIDER, ProviderEvent.event_id == event.id)
            .first()
        )
        if seen is not None and seen.processed:
            logger.info(f"[WEBHOOK] Event {event.id} already processed, skipping")
            return WebhookResult(event.id, event.type, "duplicate", str(seen.tenant_id) if seen.tenant_id else None)

        tenant_id = self.resolve_tenant(event)
        try:
            with atomic(self.db):
                if isinstance(event, UnknownEvent) or tenant_id is None:
                    status = "ignored"
                    detail = "unknown event type" if isinstance(event, UnknownEvent) else "no matching tenant"
                    log_billing_event(
                        self.db,
                        AuditEventType.WEBHOOK_IGNORED,
                        tenant_id=tenant_id,
                        resource_type="provider_event",
                        resource_id=event.id,
                        details={"type": event.type, "reason": detail},
                    )
                else:
                    status, detail = "processed", self._dispatch(event, tenant_id)
                self._record(seen, event, raw, tenant_id)
        except IntegrityError:
            # A concurrent delivery of the same event won the insert
            logger.info(f"[WEBHOOK] Event {event.id} recorded concurrently, treating as duplicate")
            return WebhookResult(event.id, event.type, "duplicate", str(tenant_id) if tenant_id else None)
        except BillingError as e:
            # Settled or inapplicable for the current state: acknowledge, keep the record
            logger.warning(f"[WEBHOOK] {event.type} ({event.id}) not applied: {e.code} {e.message}")
            with atomic(self.db):
                self._record(seen, event, raw, tenant_id)
            return WebhookResult(event.id, event.type, "skipped", str(tenant_id) if tenant_id else None, e.code)

        if status == "ignored":
            logger.info(f"[WEBHOOK] Ignored {event.type} ({event.id}): {detail}")
        else:
            logger.info(f"[WEBHOOK] Processed {event.type} ({event.id}) for tenant {tenant_id}")
        return WebhookResult(event.id, event.type, status, str(tenant_id) if tenant_id else None, detail)

    def _record(self, seen: Optional[ProviderEvent], event: WebhookEvent, raw: dict, tenant_id):
        if seen is None:
            seen = ProviderEvent(provider=PROVIDER, event_id=event.id, type=event.type, payload=raw)
            self.db.add(seen)
        seen.tenant_id = tenant_id
        seen.processed = True
        seen.processed_at = utcnow()
        self.db.flush()

    def _dispatch(self, event: WebhookEvent, tenant_id: uuid.UUID) -> str:
        if isinstance(event, CheckoutCompleted):
            snapshot = ProviderSubscriptionSnapshot(
                subscription_id=event.subscription_id,
                customer_id=event.customer_id,
                price_id=event.price_id,
                status="active" if event.payment_status == "paid" else None,
            )
            sub = self.invoices.upsert_from_webhook_snapshot(tenant_id, snapshot)
            return f"linked {sub.provider_subscription_id or sub.provider_customer_id}"

        if isinstance(event, SubscriptionUpdated):
            sub = self.invoices.upsert_from_webhook_snapshot(tenant_id, event.snapshot)
            return f"status {sub.status.value}"

        if isinstance(event, SubscriptionDeleted):
            snapshot = event.snapshot.model_copy(update={"status": "canceled", "cancel_at_period_end": False})
            sub = self.invoices.upsert_from_webhook_snapshot(tenant_id, snapshot)
            return f"status {sub.status.value}"

        if isinstance(event, InvoicePaid):
            invoice = self.invoices.record_provider_payment(
                tenant_id,
                event.invoice_id,
                amount=event.amount,
                currency=event.currency,
                period_end=event.period_end,
                paid_at=event.paid_at,
                raw={"event_id": event.id, "type": event.type},
            )
            return "invoice recorded" if invoice is not None else "month already paid"

        if isinstance(event, InvoicePaymentFailed):
            self.invoices.record_payment_failure(
                tenant_id,
                event.invoice_id,
                amount=event.amount,
                currency=event.currency,
                period_end=event.period_end,
                raw={"event_id": event.id, "type": event.type},
            )
            return "payment failure recorded"

        raise ValidationError("unsupported_event", f"No handler for {event.type}")

    # -------------------------------------------------------- admin actions

    def _require_tenant(self, tenant_id) -> uuid.UUID:
        if tenant_id is None or str(tenant_id).strip() == "":
            raise ValidationError("missing_tenant_id", "tenant_id is required")
        parsed = _as_uuid(tenant_id)
        if parsed is None or self.db.get(Tenant, parsed) is None:
            raise NotFoundError("tenant_not_found", f"Tenant {tenant_id} not found")
        return parsed

    def billing_state(self, tenant_id, limit: int = 20, evaluate: bool = True) -> dict:
        """
        The tenant's subscription and recent invoices.

        ``evaluate=False`` returns the row as stored, for responses to a write
        that has just set the status itself.
        """
        tenant_id = self._require_tenant(tenant_id)
        if evaluate:
            sub = self.ledger.get(tenant_id)
        else:
            sub = self.db.query(Subscription).filter(Subscription.tenant_id == tenant_id).first()
        invoices = self.invoices.list_invoices(tenant_id, limit=limit)
        return {
            "subscription": subscription_snapshot(sub),
            "invoices": [invoice_to_dict(i) for i in invoices],
        }

    def pay_for_month(self, tenant_id, year, month, actor_id: Optional[uuid.UUID] = None) -> dict:
        tenant_id = self._require_tenant(tenant_id)
        self.invoices.pay_for_month(tenant_id, year, month, actor_id=actor_id)
        return self.billing_state(tenant_id, evaluate=False)

    def pay_for_year(self, tenant_id, year, from_month=1, actor_id: Optional[uuid.UUID] = None) -> dict:
        tenant_id = self._require_tenant(tenant_id)
        outcome = self.invoices.pay_for_year(tenant_id, year, from_month, actor_id=actor_id)
        return {**self.billing_state(tenant_id, evaluate=False), **outcome}

    def set_plan(self, tenant_id, plan, actor_id: Optional[uuid.UUID] = None) -> dict:
        tenant_id = self._require_tenant(tenant_id)
        self.ledger.set_plan(tenant_id, plan, actor_id=actor_id)
        return self.billing_state(tenant_id)

    def cancel(self, tenant_id, mode: str = "now", actor_id: Optional[uuid.UUID] = None) -> dict:
        tenant_id = self._require_tenant(tenant_id)
        self.ledger.cancel(tenant_id, mode, actor_id=actor_id)
        return self.billing_state(tenant_id)

    def resume(self, tenant_id, actor_id: Optional[uuid.UUID] = None) -> dict:
        tenant_id = self._require_tenant(tenant_id)
        self.ledger.resume(tenant_id, actor_id=actor_id)
        return self.billing_state(tenant_id)
