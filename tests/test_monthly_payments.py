"""Per-user monthly billing track"""
import uuid
from datetime import datetime
from decimal import Decimal

import pytest

from perdexa.core.errors import ConflictError, NotFoundError, ValidationError
from perdexa.models import Payment
from perdexa.services import monthly_payments
from perdexa.services.monthly_payments import MonthlyPaymentLedger, days_left, next_due

NOW = datetime(2025, 10, 15, 12, 0)


@pytest.fixture
def ledger(db_session):
    return MonthlyPaymentLedger(db_session, clock=lambda: NOW)


def test_record_payment_moves_due_date(db_session, ledger, user, admin_user):
    payment = ledger.record_payment(user.id, "2025-10", recorded_by=admin_user.id)

    assert payment.month_key == "2025-10"
    assert payment.amount == Decimal("2000.000000")
    assert payment.currency == "TRY"
    assert payment.paid_at == NOW

    db_session.refresh(user)
    assert user.billing_paid_for_month == datetime(2025, 10, 1)
    assert user.billing_next_due_at == datetime(2025, 11, 1)


def test_back_month_keeps_due_date(db_session, ledger, user):
    ledger.record_payment(user.id, "2025-12")
    ledger.record_payment(user.id, "2025-10")

    db_session.refresh(user)
    assert user.billing_paid_for_month == datetime(2025, 12, 1)
    assert user.billing_next_due_at == datetime(2026, 1, 1)
    assert days_left(NOW, next_due(user, NOW)) == 78
    assert db_session.query(Payment).count() == 2


def test_record_payment_uses_user_price(db_session, ledger, user):
    user.monthly_price = Decimal("1750.50")
    db_session.commit()

    assert ledger.record_payment(user.id, "2025-10").amount == Decimal("1750.500000")
    assert ledger.record_payment(user.id, "2025-11", amount="99,90").amount == Decimal("99.900000")


def test_record_payment_twice(db_session, ledger, user):
    ledger.record_payment(user.id, "2025-10")

    with pytest.raises(ConflictError) as exc:
        ledger.record_payment(user.id, " 2025-10 ")
    assert exc.value.code == "already_paid"
    assert db_session.query(Payment).count() == 1


@pytest.mark.parametrize("month_key", ["2025-13", "2025-1", "October", "", "2025-00"])
def test_record_payment_bad_month(ledger, user, month_key):
    with pytest.raises(ValidationError) as exc:
        ledger.record_payment(user.id, month_key)
    assert exc.value.code == "invalid_month"


def test_record_payment_rejects_non_positive(ledger, user):
    with pytest.raises(ValidationError) as exc:
        ledger.record_payment(user.id, "2025-10", amount="0")
    assert exc.value.code == "amount_positive"


def test_unknown_user(ledger):
    with pytest.raises(NotFoundError) as exc:
        ledger.record_payment(uuid.uuid4(), "2025-10")
    assert exc.value.code == "user_not_found"


def test_next_due_defaults_to_next_month(user):
    assert next_due(user, NOW) == datetime(2025, 11, 1)
    assert next_due(user, datetime(2025, 12, 31, 23, 0)) == datetime(2026, 1, 1)

    user.billing_next_due_at = datetime(2026, 3, 1)
    assert next_due(user, NOW) == datetime(2026, 3, 1)


def test_days_left_rounds_up_and_floors_at_zero():
    assert days_left(NOW, datetime(2025, 11, 1)) == 17
    assert days_left(NOW, datetime(2025, 10, 15, 12, 0)) == 0
    assert days_left(NOW, datetime(2025, 10, 1)) == 0


def test_month_overview(ledger, user):
    ledger.record_payment(user.id, "2025-10")
    ledger.record_payment(user.id, "2025-12")

    overview = ledger.month_overview(user.id)

    assert overview["monthly_price"] == "2000.00"
    assert overview["currency"] == "TRY"
    assert overview["next_due_at"] == "2026-01-01T00:00:00"
    assert overview["paid_for_month"] == "2025-12-01T00:00:00"
    months = overview["months"]
    assert len(months) == 12
    assert months[0] == {"month_key": "2025-10", "paid": True}
    assert months[1] == {"month_key": "2025-11", "paid": False}
    assert months[2] == {"month_key": "2025-12", "paid": True}
    assert months[-1]["month_key"] == "2026-09"
    assert {p["month_key"] for p in overview["recent_payments"]} == {"2025-10", "2025-12"}


def test_request_payment_sends_notification(db_session, ledger, user, monkeypatch):
    sent = []

    def fake_send(email, user_id, month_key, amount, currency, **context):
        sent.append((email, user_id, month_key, amount, currency, context))
        return True

    monkeypatch.setattr(monthly_payments.notifications, "send_payment_request_email", fake_send)

    assert ledger.request_payment(user.id, "2025-11", context={"ip": "10.0.0.1", "user_agent": "pytest"}) is True
    assert sent == [
        ("shop@perdexa.test", str(user.id), "2025-11", "2000.00", "TRY", {"ip": "10.0.0.1", "user_agent": "pytest"})
    ]
    assert db_session.query(Payment).count() == 0


def test_request_payment_without_mail_provider(db_session, ledger, user):
    """No BREVO_API_KEY: nothing is delivered, nothing is recorded"""
    assert ledger.request_payment(user.id, "2025-11") is False
    assert db_session.query(Payment).count() == 0


def test_request_payment_bad_month(ledger, user):
    with pytest.raises(ValidationError):
        ledger.request_payment(user.id, "next month")
