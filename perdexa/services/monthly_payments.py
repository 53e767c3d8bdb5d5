"""
Per-user monthly billing track.

A lightweight ledger beside the tenant subscription machinery: users ask for
a month to be billed (an operator notification), an operator records the
payment, and the user's due date moves one month ahead.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from perdexa.core.audit import log_billing_event
from perdexa.core.config import settings
from perdexa.core.errors import ConflictError, NotFoundError, ValidationError
from perdexa.db.session import atomic
from perdexa.models.audit_log import AuditEventType
from perdexa.models.payment import Payment
from perdexa.models.user import User
from perdexa.services import notifications
from perdexa.utils.dates import (
    add_months,
    days_between,
    format_month_key,
    isoformat,
    parse_month_key,
    start_of_month,
    utcnow,
)
from perdexa.utils.money import ZERO, money_str, to_money

logger = logging.getLogger(__name__)

MONTH_SPAN = 12
RECENT_PAYMENTS = 6


def next_due(user: User, now: Optional[datetime] = None) -> datetime:
    """Stored due date, else the first day of next month."""
    if user.billing_next_due_at is not None:
        return user.billing_next_due_at
    return add_months(start_of_month(now or utcnow()), 1)


def days_left(now: datetime, due: datetime) -> int:
    return max(0, days_between(now, due))


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": str(payment.id),
        "month_key": payment.month_key,
        "amount": money_str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "paid_at": isoformat(payment.paid_at),
    }


class MonthlyPaymentLedger:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def _user(self, user_id: uuid.UUID, lock: bool = False) -> User:
        q = self.db.query(User).filter(User.id == user_id)
        if lock:
            q = q.with_for_update()
        user = q.first()
        if user is None:
            raise NotFoundError("user_not_found", f"User {user_id} not found")
        return user

    next_due = staticmethod(next_due)
    days_left = staticmethod(days_left)

    def price_for(self, user: User) -> Decimal:
        return to_money(user.monthly_price if user.monthly_price is not None else settings.MONTHLY_PRICE)

    def request_payment(self, user_id: uuid.UUID, month_key: str, context: Optional[dict] = None) -> bool:
        """
        Ask an operator to bill ``month_key``. Creates no Payment row.
        Returns whether the notification went out.
        """
        parse_month_key(month_key)
        month_key = month_key.strip()
        user = self._user(user_id)
        context = context or {}
        amount = self.price_for(user)

        sent = notifications.send_payment_request_email(
            user.email,
            str(user.id),
            month_key,
            money_str(amount),
            settings.BILLING_CURRENCY,
            ip=context.get("ip"),
            user_agent=context.get("user_agent"),
        )
        if sent:
            logger.info(f"[BILLING] Payment request for user {user_id} {month_key} sent")
        else:
            logger.warning(f"[BILLING] Payment request for user {user_id} {month_key} was not delivered")
        return sent

    def record_payment(
        self,
        user_id: uuid.UUID,
        month_key: str,
        amount=None,
        recorded_by: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Record a paid month for a user and move their due date.

        Raises:
            ValidationError: invalid_month, amount_positive
            ConflictError: already_paid
            NotFoundError: user_not_found
        """
        month_start = parse_month_key(month_key)
        month_key = format_month_key(month_start)
        now = now or self.clock()

        try:
            with atomic(self.db):
                user = self._user(user_id, lock=True)
                value = to_money(amount) if amount is not None else self.price_for(user)
                if value <= ZERO:
                    raise ValidationError("amount_positive", "Amount must be greater than zero")

                exists = (
                    self.db.query(Payment.id)
                    .filter(Payment.user_id == user.id, Payment.month_key == month_key)
                    .first()
                )
                if exists is not None:
                    raise ConflictError("already_paid", f"{month_key} is already paid", month_key=month_key)

                payment = Payment(
                    user_id=user.id,
                    month_key=month_key,
                    amount=value,
                    currency=settings.BILLING_CURRENCY,
                    status="paid",
                    paid_at=now,
                    recorded_by=recorded_by,
                )
                self.db.add(payment)
                # A back month never moves the due date backwards
                if user.billing_paid_for_month is None or month_start > user.billing_paid_for_month:
                    user.billing_paid_for_month = month_start
                    user.billing_next_due_at = add_months(month_start, 1)
                self.db.flush()

                log_billing_event(
                    self.db,
                    AuditEventType.MONTHLY_PAYMENT_RECORDED,
                    tenant_id=user.tenant_id,
                    actor_id=recorded_by,
                    resource_type="payment",
                    resource_id=payment.id,
                    details={"user_id": str(user.id), "month_key": month_key, "amount": money_str(value)},
                )
        except IntegrityError:
            raise ConflictError("already_paid", f"{month_key} is already paid", month_key=month_key)

        logger.info(f"[BILLING] User {user_id} paid {month_key}: {money_str(value)} {settings.BILLING_CURRENCY}")
        return payment

    def month_overview(self, user_id: uuid.UUID, now: Optional[datetime] = None, span: int = MONTH_SPAN) -> dict:
        """Billing page data: due date, the next ``span`` months with paid flags, recent payments."""
        now = now or self.clock()
        user = self._user(user_id)
        due = next_due(user, now)

        start = start_of_month(now)
        keys = [format_month_key(add_months(start, i)) for i in range(span)]
        paid = {
            row.month_key
            for row in self.db.query(Payment.month_key).filter(
                Payment.user_id == user.id, Payment.month_key.in_(keys)
            )
        }
        recent = (
            self.db.query(Payment)
            .filter(Payment.user_id == user.id)
            .order_by(Payment.paid_at.desc())
            .limit(RECENT_PAYMENTS)
            .all()
        )
        return {
            "user_id": str(user.id),
            "monthly_price": money_str(self.price_for(user)),
            "currency": settings.BILLING_CURRENCY,
            "next_due_at": isoformat(due),
            "days_left": days_left(now, due),
            "paid_for_month": isoformat(user.billing_paid_for_month),
            "months": [{"month_key": k, "paid": k in paid} for k in keys],
            "recent_payments": [payment_to_dict(p) for p in recent],
        }
