"""
Invoices and the manual "pay for month" flow.

Invoices are created when a payment settles (admin action or provider event).
At most one paid invoice exists per tenant and calendar month of ``due_at``;
the partial unique index ``uq_invoices_paid_tenant_period`` backs the check
made here.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from perdexa.core.audit import log_billing_event
from perdexa.core.config import settings
from perdexa.core.errors import ConflictError, NotFoundError
from perdexa.db.session import atomic
from perdexa.models.audit_log import AuditEventType
from perdexa.models.invoice import Invoice, InvoiceStatus
from perdexa.models.subscription import Plan, Subscription, SubscriptionStatus
from perdexa.schemas.webhook import ProviderSubscriptionSnapshot
from perdexa.services.subscription_ledger import SubscriptionEvent, SubscriptionLedger
from perdexa.utils.dates import format_month_key, isoformat, month_bounds, utcnow, validate_year_month
from perdexa.utils.money import money_str, to_money

logger = logging.getLogger(__name__)

# Provider status vocabulary -> canonical status
EXTERNAL_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
}

DEFAULT_EXTERNAL_STATUS = SubscriptionStatus.INCOMPLETE


def map_external_status(raw) -> SubscriptionStatus:
    """Never raises: unknown, empty or non-string input maps to ``incomplete``."""
    if not isinstance(raw, str):
        return DEFAULT_EXTERNAL_STATUS
    status = EXTERNAL_STATUS_MAP.get(raw.strip().lower())
    if status is None:
        logger.warning(f"[BILLING] Unknown provider status {raw!r}, using {DEFAULT_EXTERNAL_STATUS.value}")
        return DEFAULT_EXTERNAL_STATUS
    return status


def invoice_to_dict(invoice: Invoice) -> dict:
    return {
        "id": str(invoice.id),
        "tenant_id": str(invoice.tenant_id),
        "subscription_id": str(invoice.subscription_id) if invoice.subscription_id else None,
        "status": invoice.status.value,
        "amount": money_str(invoice.amount),
        "currency": invoice.currency,
        "provider": invoice.provider,
        "provider_invoice_id": invoice.provider_invoice_id,
        "paid_at": isoformat(invoice.paid_at),
        "due_at": isoformat(invoice.due_at),
        "period_key": invoice.period_key,
        "created_at": isoformat(invoice.created_at),
    }


class InvoiceManager:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.ledger = SubscriptionLedger(db, clock=clock)

    # ------------------------------------------------------------------ reads

    def list_invoices(self, tenant_id: uuid.UUID, limit: int = 20) -> List[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.tenant_id == tenant_id)
            .order_by(Invoice.created_at.desc())
            .limit(limit)
            .all()
        )

    def paid_invoice_for(self, tenant_id: uuid.UUID, period_key: str) -> Optional[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(
                Invoice.tenant_id == tenant_id,
                Invoice.period_key == period_key,
                Invoice.status == InvoiceStatus.PAID,
            )
            .first()
        )

    def _get_invoice(self, invoice_id: uuid.UUID, lock: bool = False) -> Invoice:
        q = self.db.query(Invoice).filter(Invoice.id == invoice_id)
        if lock:
            q = q.with_for_update()
        invoice = q.first()
        if invoice is None:
            raise NotFoundError("not_found", f"Invoice {invoice_id} not found")
        return invoice

    # ------------------------------------------------------------ manual flow

    def _activate(self, sub: Subscription, period_start: datetime, period_end: datetime, now: datetime,
                  actor_id: Optional[uuid.UUID] = None, keep_coverage: bool = False):
        """
        Mark a settled payment on the subscription and move its period to the
        paid one. With ``keep_coverage`` a later period already granted is kept.
        """
        if sub.status == SubscriptionStatus.CANCELED:
            covered_until = None
            self.ledger.apply(sub, SubscriptionEvent.RESUME, actor_id=actor_id, now=now)
        else:
            covered_until = sub.current_period_end
            self.ledger.apply(sub, SubscriptionEvent.PAYMENT_SUCCEEDED, actor_id=actor_id, now=now)
        if not keep_coverage or covered_until is None or period_end >= covered_until:
            sub.current_period_start = period_start
            sub.current_period_end = period_end
        sub.trial_ends_at = None

    def _create_paid_invoice(self, sub: Subscription, period_end: datetime, now: datetime,
                             actor_id: Optional[uuid.UUID] = None, raw: Optional[dict] = None) -> Invoice:
        invoice = Invoice(
            tenant_id=sub.tenant_id,
            subscription_id=sub.id,
            status=InvoiceStatus.PAID,
            amount=to_money(settings.MONTHLY_PRICE),
            currency=settings.BILLING_CURRENCY,
            provider="manual",
            paid_at=now,
            due_at=period_end,
            period_key=format_month_key(period_end),
            raw=raw,
        )
        self.db.add(invoice)
        return invoice

    def pay_for_month(self, tenant_id: uuid.UUID, year, month, actor_id: Optional[uuid.UUID] = None,
                      now: Optional[datetime] = None) -> Invoice:
        """
        Record a manual payment for one calendar month and activate the
        subscription for that month, all in one unit of work.

        Raises:
            ValidationError: invalid_year_month
            ConflictError: already_paid (nothing changed)
            NotFoundError: tenant_not_found
        """
        y, m = validate_year_month(year, month)
        period_start, period_end = month_bounds(y, m)
        period_key = format_month_key(period_start)
        now = now or self.clock()

        try:
            with atomic(self.db):
                sub = self.ledger.get_or_create(tenant_id, lock=True)
                self.ledger.evaluate(sub, now=now)

                if self.paid_invoice_for(tenant_id, period_key) is not None:
                    raise ConflictError("already_paid", f"{period_key} is already paid", period=period_key)

                invoice = self._create_paid_invoice(
                    sub, period_end, now, actor_id=actor_id,
                    raw={"source": "admin", "year": y, "month": m, "actor_id": str(actor_id) if actor_id else None},
                )
                self._activate(sub, period_start, period_end, now, actor_id=actor_id)
                self.db.flush()
                self._audit_paid(invoice, actor_id)
        except IntegrityError:
            # Another request paid the same month between our check and insert
            logger.info(f"[BILLING] Concurrent payment for tenant {tenant_id} {period_key}")
            raise ConflictError("already_paid", f"{period_key} is already paid", period=period_key)

        logger.info(f"[BILLING] Tenant {tenant_id} paid {period_key}: {money_str(invoice.amount)} {invoice.currency}")
        return invoice

    def pay_for_year(self, tenant_id: uuid.UUID, year, from_month=1, actor_id: Optional[uuid.UUID] = None,
                     now: Optional[datetime] = None) -> dict:
        """
        Pay every month ``from_month..12`` of ``year`` not already paid.

        Open or failed invoices for a month are settled in place; months that
        already have a paid invoice are skipped.
        """
        y, first = validate_year_month(year, from_month)
        now = now or self.clock()
        paid, skipped = [], []

        try:
            with atomic(self.db):
                sub = self.ledger.get_or_create(tenant_id, lock=True)
                self.ledger.evaluate(sub, now=now)

                for m in range(first, 13):
                    period_start, period_end = month_bounds(y, m)
                    period_key = format_month_key(period_start)
                    if self.paid_invoice_for(tenant_id, period_key) is not None:
                        skipped.append(period_key)
                        continue

                    pending = (
                        self.db.query(Invoice)
                        .filter(
                            Invoice.tenant_id == tenant_id,
                            Invoice.period_key == period_key,
                            Invoice.status.in_([InvoiceStatus.OPEN, InvoiceStatus.FAILED]),
                        )
                        .with_for_update()
                        .first()
                    )
                    if pending is not None:
                        pending.status = InvoiceStatus.PAID
                        pending.paid_at = now
                        invoice = pending
                    else:
                        invoice = self._create_paid_invoice(
                            sub, period_end, now, actor_id=actor_id,
                            raw={"source": "admin", "year": y, "month": m, "bulk": True},
                        )
                    self.db.flush()
                    self._audit_paid(invoice, actor_id)
                    paid.append(period_key)

                if paid:
                    first_start, _ = month_bounds(y, int(paid[0][5:]))
                    _, last_end = month_bounds(y, int(paid[-1][5:]))
                    self._activate(sub, first_start, last_end, now, actor_id=actor_id, keep_coverage=True)
                    self.db.flush()
        except IntegrityError:
            logger.info(f"[BILLING] Concurrent yearly payment for tenant {tenant_id} {y}")
            raise ConflictError("already_paid", f"A month of {y} was paid concurrently", year=y)

        logger.info(f"[BILLING] Tenant {tenant_id} paid {len(paid)} month(s) of {y}, skipped {skipped}")
        return {"paid": paid, "skipped": skipped}

    def _audit_paid(self, invoice: Invoice, actor_id=None):
        log_billing_event(
            self.db,
            AuditEventType.INVOICE_PAID,
            tenant_id=invoice.tenant_id,
            actor_id=actor_id,
            resource_type="invoice",
            resource_id=invoice.id,
            details={
                "period": invoice.period_key,
                "amount": money_str(invoice.amount),
                "currency": invoice.currency,
                "provider": invoice.provider,
            },
        )

    # ---------------------------------------------------------- provider flow

    def upsert_from_webhook_snapshot(self, tenant_id: uuid.UUID, snapshot: ProviderSubscriptionSnapshot,
                                     now: Optional[datetime] = None) -> Subscription:
        """
        Copy provider-owned fields onto the tenant's subscription.

        The provider is authoritative for status here, so the mapped status is
        written directly rather than through the transition table. Plan only
        changes for price ids listed in PRICE_PLAN_MAP.
        """
        now = now or self.clock()
        with atomic(self.db):
            sub = self.ledger.get_or_create(tenant_id, lock=True)
            previous = {"status": sub.status.value, "plan": sub.plan.value}

            sub.provider = "stripe"
            if snapshot.customer_id:
                sub.provider_customer_id = snapshot.customer_id
            if snapshot.subscription_id:
                sub.provider_subscription_id = snapshot.subscription_id
            if snapshot.current_period_start is not None:
                sub.current_period_start = snapshot.current_period_start
            if snapshot.current_period_end is not None:
                sub.current_period_end = snapshot.current_period_end
            if snapshot.cancel_at_period_end is not None:
                sub.cancel_at_period_end = snapshot.cancel_at_period_end
            if snapshot.trial_end is not None:
                sub.trial_ends_at = snapshot.trial_end

            if snapshot.price_id:
                sub.price_id = snapshot.price_id
                mapped_plan = settings.PRICE_PLAN_MAP.get(snapshot.price_id)
                if mapped_plan:
                    sub.plan = Plan(mapped_plan)
                else:
                    logger.warning(f"[BILLING] Price {snapshot.price_id} not in PRICE_PLAN_MAP, plan left as {sub.plan.value}")

            if snapshot.status is not None:
                status = map_external_status(snapshot.status)
                sub.status = status
                if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                    sub.grace_until = None
                    if status == SubscriptionStatus.ACTIVE:
                        sub.trial_ends_at = None
                elif status == SubscriptionStatus.PAST_DUE:
                    if sub.grace_until is None:
                        sub.grace_until = now + self._grace()
                else:
                    sub.grace_until = None
                if status == SubscriptionStatus.CANCELED:
                    sub.cancel_at_period_end = False

            self.db.flush()
            log_billing_event(
                self.db,
                AuditEventType.SUBSCRIPTION_SYNCED,
                tenant_id=tenant_id,
                resource_type="subscription",
                resource_id=sub.id,
                details={
                    "from": previous,
                    "to": {"status": sub.status.value, "plan": sub.plan.value},
                    "provider_status": snapshot.status,
                    "price_id": snapshot.price_id,
                    "current_period_end": isoformat(sub.current_period_end),
                    "cancel_at_period_end": bool(sub.cancel_at_period_end),
                },
            )
        logger.info(f"[BILLING] Synced tenant {tenant_id} from provider: {previous['status']} -> {sub.status.value}")
        return sub

    def _grace(self) -> timedelta:
        return timedelta(days=settings.GRACE_PERIOD_DAYS)

    def _provider_invoice(self, provider_invoice_id: Optional[str]) -> Optional[Invoice]:
        if not provider_invoice_id:
            return None
        return (
            self.db.query(Invoice)
            .filter(Invoice.provider == "stripe", Invoice.provider_invoice_id == provider_invoice_id)
            .with_for_update()
            .first()
        )

    def record_provider_payment(
        self,
        tenant_id: uuid.UUID,
        provider_invoice_id: Optional[str],
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        period_end: Optional[datetime] = None,
        paid_at: Optional[datetime] = None,
        raw: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Invoice]:
        """
        Settle a provider invoice and mark the subscription active.

        Idempotent on ``provider_invoice_id``. When the month already holds a
        paid invoice (e.g. an admin paid it by hand) no second invoice is
        written, but the subscription is still brought up to date. Returns the
        invoice, or None when none was recorded.
        """
        now = now or self.clock()
        paid_at = paid_at or now
        due_at = period_end or paid_at
        period_key = format_month_key(due_at)

        with atomic(self.db):
            sub = self.ledger.get_or_create(tenant_id, lock=True)
            invoice = self._provider_invoice(provider_invoice_id)

            if invoice is not None and invoice.status == InvoiceStatus.PAID:
                logger.info(f"[BILLING] Provider invoice {provider_invoice_id} already recorded")
                return invoice

            existing_paid = self.paid_invoice_for(tenant_id, period_key)
            if existing_paid is not None and existing_paid is not invoice:
                logger.info(f"[BILLING] {period_key} already paid for tenant {tenant_id}; not recording {provider_invoice_id}")
                invoice = None
            elif invoice is not None:
                invoice.status = InvoiceStatus.PAID
                invoice.paid_at = paid_at
                if amount is not None:
                    invoice.amount = to_money(amount)
            else:
                invoice = Invoice(
                    tenant_id=tenant_id,
                    subscription_id=sub.id,
                    status=InvoiceStatus.PAID,
                    amount=to_money(amount if amount is not None else settings.MONTHLY_PRICE),
                    currency=(currency or settings.BILLING_CURRENCY).upper(),
                    provider="stripe",
                    provider_invoice_id=provider_invoice_id,
                    paid_at=paid_at,
                    due_at=due_at,
                    period_key=period_key,
                    raw=raw,
                )
                self.db.add(invoice)

            if sub.status == SubscriptionStatus.CANCELED:
                self.ledger.apply(sub, SubscriptionEvent.RESUME, now=now)
            else:
                self.ledger.apply(sub, SubscriptionEvent.PAYMENT_SUCCEEDED, now=now)
            if period_end is not None:
                sub.current_period_end = period_end
            self.db.flush()
            if invoice is not None:
                self._audit_paid(invoice)

        logger.info(f"[BILLING] Provider payment for tenant {tenant_id} ({provider_invoice_id}) settled")
        return invoice

    def record_payment_failure(
        self,
        tenant_id: uuid.UUID,
        provider_invoice_id: Optional[str],
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        period_end: Optional[datetime] = None,
        raw: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Record a failed provider charge and move the subscription to past_due."""
        now = now or self.clock()
        due_at = period_end or now

        with atomic(self.db):
            sub = self.ledger.get_or_create(tenant_id, lock=True)
            self.ledger.evaluate(sub, now=now)
            invoice = self._provider_invoice(provider_invoice_id)
            if invoice is None:
                invoice = Invoice(
                    tenant_id=tenant_id,
                    subscription_id=sub.id,
                    status=InvoiceStatus.FAILED,
                    amount=to_money(amount if amount is not None else settings.MONTHLY_PRICE),
                    currency=(currency or settings.BILLING_CURRENCY).upper(),
                    provider="stripe",
                    provider_invoice_id=provider_invoice_id,
                    due_at=due_at,
                    period_key=format_month_key(due_at),
                    raw=raw,
                )
                self.db.add(invoice)
            elif invoice.status == InvoiceStatus.OPEN:
                invoice.status = InvoiceStatus.FAILED

            if sub.status in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
                self.ledger.apply(sub, SubscriptionEvent.PAYMENT_FAILED, now=now)
            else:
                logger.info(f"[BILLING] Payment failure for tenant {tenant_id} ignored in status {sub.status.value}")
            self.db.flush()
            log_billing_event(
                self.db,
                AuditEventType.INVOICE_FAILED,
                tenant_id=tenant_id,
                resource_type="invoice",
                resource_id=invoice.id,
                details={"provider_invoice_id": provider_invoice_id, "grace_until": isoformat(sub.grace_until)},
            )

        logger.warning(f"[BILLING] Payment failed for tenant {tenant_id} ({provider_invoice_id})")
        return invoice

    # ------------------------------------------------------------- corrections

    def void_invoice(self, invoice_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> Invoice:
        """Void an invoice. A voided paid invoice frees its month for a new payment."""
        with atomic(self.db):
            invoice = self._get_invoice(invoice_id, lock=True)
            if invoice.status in (InvoiceStatus.VOIDED, InvoiceStatus.REFUNDED):
                raise ConflictError(
                    "invalid_invoice_status",
                    f"Invoice is already {invoice.status.value}",
                    status=invoice.status.value,
                )
            previous = invoice.status
            invoice.status = InvoiceStatus.VOIDED
            log_billing_event(
                self.db,
                AuditEventType.INVOICE_VOIDED,
                tenant_id=invoice.tenant_id,
                actor_id=actor_id,
                resource_type="invoice",
                resource_id=invoice.id,
                details={"from": previous.value},
            )
        logger.info(f"[BILLING] Invoice {invoice_id} voided (was {previous.value})")
        return invoice

    def refund_invoice(self, invoice_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> Invoice:
        """Mark a paid invoice refunded. Subscription status is left to the operator."""
        with atomic(self.db):
            invoice = self._get_invoice(invoice_id, lock=True)
            if invoice.status != InvoiceStatus.PAID:
                raise ConflictError(
                    "invalid_invoice_status",
                    "Only paid invoices can be refunded",
                    status=invoice.status.value,
                )
            invoice.status = InvoiceStatus.REFUNDED
            log_billing_event(
                self.db,
                AuditEventType.INVOICE_REFUNDED,
                tenant_id=invoice.tenant_id,
                actor_id=actor_id,
                resource_type="invoice",
                resource_id=invoice.id,
                details={"amount": money_str(invoice.amount), "currency": invoice.currency},
            )
        logger.info(f"[BILLING] Invoice {invoice_id} refunded")
        return invoice
