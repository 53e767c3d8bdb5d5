"""Webhook reconciliation and admin billing actions"""
import calendar
from datetime import datetime
from decimal import Decimal

import pytest

from perdexa.core.config import settings
from perdexa.core.errors import AuthorizationError, NotFoundError, ValidationError
from perdexa.models import Invoice, InvoiceStatus, Plan, ProviderEvent, Subscription, SubscriptionStatus
from perdexa.services.reconciliation import ReconciliationGateway
from perdexa.utils.dates import utcnow

PERIOD_END = datetime(2030, 1, 31, 12, 0, 0)


def unix(value: datetime) -> int:
    return calendar.timegm(value.timetuple())


def subscription_object(tenant, status, **fields):
    obj = {
        "id": "sub_C",
        "object": "subscription",
        "customer": "cus_C",
        "status": status,
        "current_period_start": unix(datetime(2029, 12, 31, 12, 0, 0)),
        "current_period_end": unix(PERIOD_END),
        "cancel_at_period_end": False,
        "metadata": {"tenant_id": str(tenant.id)},
        "items": {"data": [{"price": {"id": "price_pro_monthly"}}]},
    }
    obj.update(fields)
    return obj


@pytest.fixture
def gateway(db_session):
    return ReconciliationGateway(db_session)


def subscription_for(db, tenant) -> Subscription:
    db.expire_all()
    return db.query(Subscription).filter_by(tenant_id=tenant.id).one()


# =============================================================================
# Signature
# =============================================================================

def test_bad_signature_writes_nothing(db_session, gateway, tenant, webhook_delivery):
    body, _ = webhook_delivery("customer.subscription.updated", subscription_object(tenant, "active"))

    for header in ("t=1700000000,v1=deadbeef", None, ""):
        with pytest.raises(AuthorizationError) as exc:
            gateway.handle(body, header)
        assert exc.value.code == "invalid_signature"
        assert exc.value.status_code == 400

    assert db_session.query(ProviderEvent).count() == 0
    assert db_session.query(Subscription).count() == 0


def test_wrong_secret_rejected(gateway, tenant, webhook_delivery):
    body, header = webhook_delivery(
        "customer.subscription.updated", subscription_object(tenant, "active"), secret="whsec_someone_else"
    )
    with pytest.raises(AuthorizationError):
        gateway.handle(body, header)


def test_tampered_body_rejected(gateway, tenant, webhook_delivery):
    body, header = webhook_delivery("customer.subscription.updated", subscription_object(tenant, "past_due"))
    with pytest.raises(AuthorizationError):
        gateway.handle(body.replace(b"past_due", b"active"), header)


# =============================================================================
# Subscription events
# =============================================================================

def test_past_due_then_active(db_session, gateway, tenant, webhook_delivery):
    """Provider status drives the subscription, including grace bookkeeping"""
    result = gateway.handle(*webhook_delivery(
        "customer.subscription.updated", subscription_object(tenant, "past_due"), event_id="evt_1"
    ))
    assert result.status == "processed"
    assert result.tenant_id == str(tenant.id)

    sub = subscription_for(db_session, tenant)
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.grace_until is not None
    assert sub.provider_subscription_id == "sub_C"
    assert sub.current_period_end == PERIOD_END

    result = gateway.handle(*webhook_delivery(
        "customer.subscription.updated", subscription_object(tenant, "active"), event_id="evt_2"
    ))
    assert result.status == "processed"
    sub = subscription_for(db_session, tenant)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.grace_until is None


def test_unknown_provider_status(db_session, gateway, tenant, webhook_delivery):
    result = gateway.handle(*webhook_delivery(
        "customer.subscription.updated", subscription_object(tenant, "paused_by_bank")
    ))
    assert result.status == "processed"
    assert subscription_for(db_session, tenant).status == SubscriptionStatus.INCOMPLETE


def test_mapped_price_sets_plan(db_session, gateway, tenant, webhook_delivery, monkeypatch):
    monkeypatch.setattr(settings, "PRICE_PLAN_MAP", {"price_pro_monthly": "PRO"})
    gateway.handle(*webhook_delivery("customer.subscription.created", subscription_object(tenant, "active")))

    sub = subscription_for(db_session, tenant)
    assert sub.plan == Plan.PRO
    assert sub.price_id == "price_pro_monthly"


def test_subscription_deleted_cancels(db_session, gateway, tenant, webhook_delivery):
    gateway.handle(*webhook_delivery(
        "customer.subscription.updated", subscription_object(tenant, "active"), event_id="evt_1"
    ))
    gateway.handle(*webhook_delivery(
        "customer.subscription.deleted", subscription_object(tenant, "active", metadata={}), event_id="evt_2"
    ))
    assert subscription_for(db_session, tenant).status == SubscriptionStatus.CANCELED


def test_replay_is_duplicate(db_session, gateway, tenant, webhook_delivery):
    delivery = webhook_delivery("customer.subscription.updated", subscription_object(tenant, "active"))
    assert gateway.handle(*delivery).status == "processed"
    assert gateway.handle(*delivery).status == "duplicate"

    events = db_session.query(ProviderEvent).all()
    assert len(events) == 1
    assert events[0].processed is True
    assert events[0].event_id == "evt_test_1"


def test_unknown_event_type_ignored(db_session, gateway, tenant, webhook_delivery):
    result = gateway.handle(*webhook_delivery("customer.created", {"id": "cus_1", "metadata": {"tenant_id": str(tenant.id)}}))

    assert result.status == "ignored"
    assert result.to_dict()["received"] is True
    assert db_session.query(ProviderEvent).count() == 1
    assert db_session.query(Subscription).count() == 0


def test_event_without_tenant_ignored(db_session, gateway, tenant, webhook_delivery):
    obj = subscription_object(tenant, "active", metadata={}, customer="cus_nobody", id="sub_nobody")
    result = gateway.handle(*webhook_delivery("customer.subscription.updated", obj))

    assert result.status == "ignored"
    assert result.detail == "no matching tenant"
    assert db_session.query(Subscription).count() == 0


def test_non_object_metadata_is_acknowledged(db_session, gateway, tenant, webhook_delivery):
    obj = subscription_object(tenant, "active", metadata="tenant=abc", customer="cus_nobody", id="sub_nobody")
    result = gateway.handle(*webhook_delivery("customer.subscription.updated", obj, event_id="evt_1"))
    assert result.status == "ignored"

    checkout = {
        "id": "cs_2",
        "object": "checkout.session",
        "client_reference_id": str(tenant.id),
        "customer": "cus_M",
        "metadata": ["price_pro_monthly"],
        "subscription_details": "none",
        "lines": {"data": "none"},
    }
    result = gateway.handle(*webhook_delivery("checkout.session.completed", checkout, event_id="evt_2"))
    assert result.status == "processed"
    assert subscription_for(db_session, tenant).provider_customer_id == "cus_M"


# =============================================================================
# Checkout / invoices
# =============================================================================

def test_checkout_links_customer_then_invoice_paid(db_session, gateway, tenant, webhook_delivery):
    checkout = {
        "id": "cs_1",
        "object": "checkout.session",
        "client_reference_id": str(tenant.id),
        "customer": "cus_X",
        "subscription": "sub_X",
        "payment_status": "paid",
    }
    gateway.handle(*webhook_delivery("checkout.session.completed", checkout, event_id="evt_1"))
    sub = subscription_for(db_session, tenant)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.provider_customer_id == "cus_X"

    # No metadata on the invoice: resolved through the linked customer id
    invoice_obj = {
        "id": "in_1",
        "object": "invoice",
        "customer": "cus_X",
        "subscription": "sub_X",
        "amount_paid": 200000,
        "currency": "try",
        "status_transitions": {"paid_at": unix(datetime(2030, 1, 2))},
        "lines": {"data": [{"period": {"start": unix(datetime(2030, 1, 1)), "end": unix(PERIOD_END)}}]},
    }
    result = gateway.handle(*webhook_delivery("invoice.paid", invoice_obj, event_id="evt_2"))
    assert result.status == "processed"

    invoice = db_session.query(Invoice).one()
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.amount == Decimal("2000.000000")
    assert invoice.currency == "TRY"
    assert invoice.provider_invoice_id == "in_1"
    assert invoice.period_key == "2030-01"
    assert subscription_for(db_session, tenant).current_period_end == PERIOD_END


def test_invoice_payment_failed(db_session, gateway, tenant, webhook_delivery):
    invoice_obj = {
        "id": "in_2",
        "object": "invoice",
        "customer": "cus_F",
        "amount_due": 200000,
        "currency": "try",
        "subscription_details": {"metadata": {"tenant_id": str(tenant.id)}},
    }
    result = gateway.handle(*webhook_delivery("invoice.payment_failed", invoice_obj))

    assert result.status == "processed"
    assert db_session.query(Invoice).one().status == InvoiceStatus.FAILED
    sub = subscription_for(db_session, tenant)
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.grace_until is not None


# =============================================================================
# Admin actions
# =============================================================================

def test_admin_requires_known_tenant(gateway):
    with pytest.raises(ValidationError) as exc:
        gateway.billing_state("  ")
    assert exc.value.code == "missing_tenant_id"

    with pytest.raises(NotFoundError) as exc:
        gateway.pay_for_month("not-a-tenant", 2025, 10)
    assert exc.value.code == "tenant_not_found"


def test_admin_pay_month_returns_state(gateway, tenant, admin_user):
    now = utcnow()
    state = gateway.pay_for_month(str(tenant.id), now.year, now.month, actor_id=admin_user.id)

    assert state["subscription"]["status"] == "active"
    assert len(state["invoices"]) == 1
    assert state["invoices"][0]["period_key"] == f"{now.year:04d}-{now.month:02d}"


def test_admin_pay_year_reports_months(gateway, tenant):
    now = utcnow()
    gateway.pay_for_month(tenant.id, now.year, now.month)
    state = gateway.pay_for_year(tenant.id, now.year, from_month=now.month)

    assert state["skipped"] == [f"{now.year:04d}-{now.month:02d}"]
    assert len(state["paid"]) == 12 - now.month
    assert state["subscription"]["status"] == "active"


def test_admin_cancel_and_resume(gateway, tenant):
    state = gateway.cancel(tenant.id, "now")
    assert state["subscription"]["status"] == "canceled"

    state = gateway.resume(tenant.id)
    assert state["subscription"]["status"] == "active"

    state = gateway.set_plan(tenant.id, "PRO")
    assert state["subscription"]["plan"] == "PRO"


def test_admin_pay_past_month_stays_active(db_session, gateway, tenant):
    """A month that has already ended still activates the subscription"""
    state = gateway.pay_for_month(str(tenant.id), 2025, 10)

    assert state["subscription"]["status"] == "active"
    assert state["subscription"]["plan"] == "FREE"
    assert state["subscription"]["current_period_end"] == "2025-10-31T23:59:59.999000"

    assert subscription_for(db_session, tenant).status == SubscriptionStatus.ACTIVE
    assert gateway.billing_state(tenant.id)["subscription"]["status"] == "active"
