"""Invoice and manual payment tests"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from perdexa.core.config import settings
from perdexa.core.errors import ConflictError, NotFoundError, ValidationError
from perdexa.models import Invoice, InvoiceStatus, Plan, Subscription, SubscriptionStatus
from perdexa.schemas.webhook import ProviderSubscriptionSnapshot
from perdexa.services.invoice_manager import InvoiceManager, invoice_to_dict, map_external_status

NOW = datetime(2025, 10, 15, 9, 30)
OCT_END = datetime(2025, 10, 31, 23, 59, 59, 999000)


@pytest.fixture
def manager(db_session):
    return InvoiceManager(db_session, clock=lambda: NOW)


def paid_invoices(db, tenant):
    return db.query(Invoice).filter_by(tenant_id=tenant.id, status=InvoiceStatus.PAID).all()


def test_pay_for_month_activates_subscription(db_session, manager, tenant):
    """Paying October from a fresh trial activates the tenant through Oct 31"""
    invoice = manager.pay_for_month(tenant.id, 2025, 10, now=NOW)

    sub = db_session.query(Subscription).filter_by(tenant_id=tenant.id).one()
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_start == datetime(2025, 10, 1)
    assert sub.current_period_end == OCT_END
    assert sub.trial_ends_at is None
    assert sub.grace_until is None

    assert invoice.status == InvoiceStatus.PAID
    assert invoice.amount == Decimal("2000.000000")
    assert invoice.currency == "TRY"
    assert invoice.due_at == OCT_END
    assert invoice.period_key == "2025-10"
    assert invoice.paid_at == NOW


def test_pay_for_month_accepts_numeric_strings(manager, tenant):
    invoice = manager.pay_for_month(tenant.id, "2025", "10", now=NOW)
    assert invoice.period_key == "2025-10"


def test_pay_for_month_twice_is_already_paid(db_session, manager, tenant):
    manager.pay_for_month(tenant.id, 2025, 10, now=NOW)

    with pytest.raises(ConflictError) as exc:
        manager.pay_for_month(tenant.id, 2025, 10, now=NOW)
    assert exc.value.code == "already_paid"
    assert exc.value.extra == {"period": "2025-10"}
    assert len(paid_invoices(db_session, tenant)) == 1


@pytest.mark.parametrize("year,month", [(2025, 13), (2025, 0), ("abc", 5), (2025, None), (2025, 5.5)])
def test_pay_for_month_rejects_bad_input(db_session, manager, tenant, year, month):
    with pytest.raises(ValidationError) as exc:
        manager.pay_for_month(tenant.id, year, month, now=NOW)
    assert exc.value.code == "invalid_year_month"
    assert db_session.query(Invoice).count() == 0
    assert db_session.query(Subscription).count() == 0


def test_pay_for_month_unknown_tenant(manager):
    with pytest.raises(NotFoundError):
        manager.pay_for_month(uuid.uuid4(), 2025, 10, now=NOW)


def test_pay_for_month_pins_period_to_paid_month(db_session, manager, tenant):
    manager.pay_for_month(tenant.id, 2025, 11, now=NOW)
    manager.pay_for_month(tenant.id, 2025, 10, now=NOW)

    sub = db_session.query(Subscription).filter_by(tenant_id=tenant.id).one()
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_start == datetime(2025, 10, 1)
    assert sub.current_period_end == OCT_END
    assert len(paid_invoices(db_session, tenant)) == 2


def test_pay_month_resumes_canceled_subscription(db_session, manager, tenant):
    db_session.add(Subscription(tenant_id=tenant.id, plan=Plan.PRO, status=SubscriptionStatus.CANCELED))
    db_session.commit()

    manager.pay_for_month(tenant.id, 2025, 10, now=NOW)

    sub = db_session.query(Subscription).filter_by(tenant_id=tenant.id).one()
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == OCT_END


def test_pay_for_year_skips_paid_months(db_session, tenant):
    manager = InvoiceManager(db_session, clock=lambda: datetime(2025, 9, 10))
    manager.pay_for_month(tenant.id, 2025, 10, now=datetime(2025, 9, 10))

    outcome = manager.pay_for_year(tenant.id, 2025, from_month=9, now=datetime(2025, 9, 10))

    assert outcome == {"paid": ["2025-09", "2025-11", "2025-12"], "skipped": ["2025-10"]}
    assert len(paid_invoices(db_session, tenant)) == 4
    sub = db_session.query(Subscription).filter_by(tenant_id=tenant.id).one()
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == datetime(2025, 12, 31, 23, 59, 59, 999000)


def test_pay_for_year_settles_failed_invoice_in_place(db_session, manager, tenant):
    failed = manager.record_payment_failure(tenant.id, "in_failed", period_end=datetime(2025, 12, 5), now=NOW)

    outcome = manager.pay_for_year(tenant.id, 2025, from_month=12, now=NOW)

    assert outcome["paid"] == ["2025-12"]
    db_session.refresh(failed)
    assert failed.status == InvoiceStatus.PAID
    assert db_session.query(Invoice).count() == 1


def test_void_frees_the_month(db_session, manager, tenant):
    invoice = manager.pay_for_month(tenant.id, 2025, 10, now=NOW)
    manager.void_invoice(invoice.id)

    again = manager.pay_for_month(tenant.id, 2025, 10, now=NOW)
    assert again.id != invoice.id
    assert len(paid_invoices(db_session, tenant)) == 1

    with pytest.raises(ConflictError) as exc:
        manager.void_invoice(invoice.id)
    assert exc.value.code == "invalid_invoice_status"


def test_refund_only_paid(manager, tenant):
    invoice = manager.pay_for_month(tenant.id, 2025, 10, now=NOW)
    refunded = manager.refund_invoice(invoice.id)
    assert refunded.status == InvoiceStatus.REFUNDED

    with pytest.raises(ConflictError):
        manager.refund_invoice(invoice.id)
    with pytest.raises(NotFoundError):
        manager.refund_invoice(uuid.uuid4())


def test_list_invoices_newest_first(db_session, manager, tenant):
    first = manager.pay_for_month(tenant.id, 2025, 10, now=NOW)
    second = manager.pay_for_month(tenant.id, 2025, 11, now=NOW)
    first.created_at = NOW - timedelta(days=1)
    db_session.commit()

    listed = manager.list_invoices(tenant.id)
    assert [i.id for i in listed] == [second.id, first.id]
    assert invoice_to_dict(listed[0])["amount"] == "2000.00"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("  PAST_DUE ", SubscriptionStatus.PAST_DUE),
        ("cancelled", SubscriptionStatus.CANCELED),
        ("incomplete_expired", SubscriptionStatus.INCOMPLETE_EXPIRED),
        ("paused", SubscriptionStatus.INCOMPLETE),
        ("", SubscriptionStatus.INCOMPLETE),
        (None, SubscriptionStatus.INCOMPLETE),
        (42, SubscriptionStatus.INCOMPLETE),
    ],
)
def test_map_external_status(raw, expected):
    assert map_external_status(raw) == expected


def test_snapshot_maps_plan_and_status(db_session, manager, tenant, monkeypatch):
    monkeypatch.setattr(settings, "PRICE_PLAN_MAP", {"price_pro_monthly": "PRO"})
    snapshot = ProviderSubscriptionSnapshot(
        subscription_id="sub_123",
        customer_id="cus_123",
        status="past_due",
        price_id="price_pro_monthly",
        current_period_end=datetime(2025, 11, 1),
    )

    sub = manager.upsert_from_webhook_snapshot(tenant.id, snapshot, now=NOW)

    assert sub.plan == Plan.PRO
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.grace_until == NOW + timedelta(days=3)
    assert sub.provider == "stripe"
    assert sub.provider_customer_id == "cus_123"
    assert sub.current_period_end == datetime(2025, 11, 1)


def test_snapshot_unmapped_price_keeps_plan(manager, tenant, monkeypatch):
    monkeypatch.setattr(settings, "PRICE_PLAN_MAP", {})
    snapshot = ProviderSubscriptionSnapshot(status="active", price_id="price_unknown")

    sub = manager.upsert_from_webhook_snapshot(tenant.id, snapshot, now=NOW)

    assert sub.plan == Plan.FREE
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.price_id == "price_unknown"


def test_provider_payment_is_idempotent(db_session, manager, tenant):
    kwargs = dict(amount=Decimal("2000"), currency="try", period_end=datetime(2025, 11, 14), now=NOW)
    first = manager.record_provider_payment(tenant.id, "in_1", **kwargs)
    second = manager.record_provider_payment(tenant.id, "in_1", **kwargs)

    assert first.id == second.id
    assert first.currency == "TRY"
    assert first.period_key == "2025-11"
    assert db_session.query(Invoice).count() == 1


def test_provider_payment_for_month_paid_by_hand(db_session, manager, tenant):
    """No second invoice, but the subscription still follows the provider"""
    manager.pay_for_month(tenant.id, 2025, 11, now=NOW)
    result = manager.record_provider_payment(tenant.id, "in_2", period_end=datetime(2025, 11, 20), now=NOW)

    assert result is None
    assert db_session.query(Invoice).count() == 1
    sub = db_session.query(Subscription).filter_by(tenant_id=tenant.id).one()
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == datetime(2025, 11, 20)


def test_payment_failure_moves_to_past_due(db_session, manager, tenant):
    manager.pay_for_month(tenant.id, 2025, 10, now=NOW)
    invoice = manager.record_payment_failure(tenant.id, "in_fail", now=NOW)

    assert invoice.status == InvoiceStatus.FAILED
    sub = db_session.query(Subscription).filter_by(tenant_id=tenant.id).one()
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.grace_until == NOW + timedelta(days=3)
