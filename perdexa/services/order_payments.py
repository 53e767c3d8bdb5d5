"""
Payments taken against customer orders.

Every write locks the order row first, so the balance check and the insert
see the same payment set even with concurrent submissions. Totals are always
recomputed from the full payment set, never accumulated.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from perdexa.core.audit import log_billing_event
from perdexa.core.errors import BalanceError, ConflictError, NotFoundError, ValidationError
from perdexa.db.session import atomic
from perdexa.models.audit_log import AuditEventType
from perdexa.models.order import Order
from perdexa.models.order_payment import OrderPayment, PaymentMethod
from perdexa.services.order_totals import item_subtotal
from perdexa.utils.dates import isoformat, utcnow
from perdexa.utils.money import ZERO, clamp_non_negative, money_str, money_sum, to_money

logger = logging.getLogger(__name__)

__all__ = ["OrderPaymentLedger", "PaymentTotals", "item_subtotal", "payment_to_dict"]


@dataclass
class PaymentTotals:
    net_total: Decimal
    total_paid: Decimal
    remaining: Decimal

    def to_dict(self) -> dict:
        return {
            "net_total": money_str(self.net_total),
            "total_paid": money_str(self.total_paid),
            "remaining": money_str(self.remaining),
        }


def payment_to_dict(payment: OrderPayment) -> dict:
    return {
        "id": str(payment.id),
        "order_id": str(payment.order_id),
        "amount": money_str(payment.amount),
        "method": payment.method.value,
        "note": payment.note,
        "paid_at": isoformat(payment.paid_at),
        "created_by": str(payment.created_by) if payment.created_by else None,
        "reverses_payment_id": str(payment.reverses_payment_id) if payment.reverses_payment_id else None,
    }


def parse_method(value) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value).strip().upper())
    except ValueError:
        raise ValidationError("invalid_method", f"method must be one of {[m.value for m in PaymentMethod]}")


class OrderPaymentLedger:
    def __init__(self, db: Session):
        self.db = db

    def _order(self, tenant_id: uuid.UUID, order_id: uuid.UUID, lock: bool = False) -> Order:
        q = self.db.query(Order).filter(Order.id == order_id, Order.tenant_id == tenant_id)
        if lock:
            q = q.with_for_update()
        order = q.first()
        if order is None:
            raise NotFoundError("not_found", "Order not found")
        return order

    def _totals_for(self, order: Order) -> PaymentTotals:
        paid = money_sum(
            row.amount for row in self.db.query(OrderPayment.amount).filter(OrderPayment.order_id == order.id)
        )
        net_total = to_money(order.net_total or 0)
        return PaymentTotals(net_total=net_total, total_paid=paid, remaining=clamp_non_negative(net_total - paid))

    def totals(self, tenant_id: uuid.UUID, order_id: uuid.UUID) -> PaymentTotals:
        return self._totals_for(self._order(tenant_id, order_id))

    def list_payments(self, tenant_id: uuid.UUID, order_id: uuid.UUID) -> List[OrderPayment]:
        self._order(tenant_id, order_id)
        return (
            self.db.query(OrderPayment)
            .filter(OrderPayment.order_id == order_id)
            .order_by(OrderPayment.paid_at.asc(), OrderPayment.created_at.asc())
            .all()
        )

    def add_payment(
        self,
        tenant_id: uuid.UUID,
        order_id: uuid.UUID,
        amount,
        method,
        note: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> PaymentTotals:
        """
        Record a payment if it fits in the remaining balance.

        Raises:
            ValidationError: amount_positive, invalid_amount, invalid_method
            NotFoundError: not_found (unknown order or another tenant's)
            BalanceError: amount_exceeds_remaining, with ``remaining``
        """
        value = to_money(amount)
        if value <= ZERO:
            raise ValidationError("amount_positive", "Amount must be greater than zero")
        payment_method = parse_method(method)

        with atomic(self.db):
            order = self._order(tenant_id, order_id, lock=True)
            before = self._totals_for(order)
            if value > before.remaining:
                raise BalanceError(
                    "amount_exceeds_remaining",
                    f"Amount {money_str(value)} exceeds remaining {money_str(before.remaining)}",
                    remaining=money_str(before.remaining),
                )

            payment = OrderPayment(
                tenant_id=tenant_id,
                order_id=order.id,
                amount=value,
                method=payment_method,
                note=(note or None),
                paid_at=paid_at or utcnow(),
                created_by=created_by,
            )
            self.db.add(payment)
            self.db.flush()
            log_billing_event(
                self.db,
                AuditEventType.ORDER_PAYMENT_ADDED,
                tenant_id=tenant_id,
                actor_id=created_by,
                resource_type="order_payment",
                resource_id=payment.id,
                details={"order_id": str(order.id), "amount": money_str(value), "method": payment_method.value},
            )
            totals = self._totals_for(order)

        logger.info(f"[ORDERS] Payment {money_str(value)} {payment_method.value} on order {order_id}, remaining {money_str(totals.remaining)}")
        return totals

    def reverse_payment(
        self,
        tenant_id: uuid.UUID,
        order_id: uuid.UUID,
        payment_id: uuid.UUID,
        note: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> PaymentTotals:
        """Compensate a payment with a negative entry. Each payment reverses once."""
        with atomic(self.db):
            order = self._order(tenant_id, order_id, lock=True)
            original = (
                self.db.query(OrderPayment)
                .filter(OrderPayment.id == payment_id, OrderPayment.order_id == order.id)
                .first()
            )
            if original is None:
                raise NotFoundError("not_found", "Payment not found")
            if original.reverses_payment_id is not None:
                raise ConflictError("cannot_reverse_reversal", "A reversal entry cannot be reversed")
            already = (
                self.db.query(OrderPayment.id)
                .filter(OrderPayment.reverses_payment_id == original.id)
                .first()
            )
            if already is not None:
                raise ConflictError("already_reversed", "Payment was already reversed", reversal_id=str(already.id))

            reversal = OrderPayment(
                tenant_id=tenant_id,
                order_id=order.id,
                amount=-to_money(original.amount),
                method=original.method,
                note=note or f"Reversal of {original.id}",
                paid_at=utcnow(),
                created_by=created_by,
                reverses_payment_id=original.id,
            )
            self.db.add(reversal)
            self.db.flush()
            log_billing_event(
                self.db,
                AuditEventType.ORDER_PAYMENT_REVERSED,
                tenant_id=tenant_id,
                actor_id=created_by,
                resource_type="order_payment",
                resource_id=reversal.id,
                details={"order_id": str(order.id), "reverses": str(original.id), "amount": money_str(original.amount)},
            )
            totals = self._totals_for(order)

        logger.info(f"[ORDERS] Payment {payment_id} on order {order_id} reversed, remaining {money_str(totals.remaining)}")
        return totals
