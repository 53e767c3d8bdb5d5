"""
Operator billing actions. Platform admins only.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from perdexa.api.deps import Actor, require_admin
from perdexa.db.session import get_db
from perdexa.schemas.billing import (
    BillingStateResponse,
    PayMonthRequest,
    PayYearRequest,
    RecordMonthlyPaymentRequest,
    SetPlanRequest,
)
from perdexa.services.invoice_manager import InvoiceManager, invoice_to_dict
from perdexa.services.monthly_payments import MonthlyPaymentLedger, payment_to_dict
from perdexa.services.reconciliation import ReconciliationGateway

router = APIRouter()


@router.get("/tenants/{tenant_id}/billing", response_model=BillingStateResponse)
def get_tenant_billing(
    tenant_id: str,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return ReconciliationGateway(db).billing_state(tenant_id)


@router.patch("/tenants/{tenant_id}/billing/pay-month", response_model=BillingStateResponse)
def pay_month(
    tenant_id: str,
    body: PayMonthRequest,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    """Record a manual payment for one month and activate the tenant for it."""
    return ReconciliationGateway(db).pay_for_month(tenant_id, body.year, body.month, actor_id=admin.user_id)


@router.post("/tenants/{tenant_id}/billing/pay-year", response_model=BillingStateResponse)
def pay_year(
    tenant_id: str,
    body: PayYearRequest,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    """Pay every unpaid month from ``from_month`` to December."""
    return ReconciliationGateway(db).pay_for_year(tenant_id, body.year, body.from_month, actor_id=admin.user_id)


@router.patch("/billing/pay-month", response_model=BillingStateResponse)
def pay_month_by_body(
    body: PayMonthRequest,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    """Same as the tenant route, with ``tenant_id`` carried in the body."""
    return ReconciliationGateway(db).pay_for_month(body.tenant_id, body.year, body.month, actor_id=admin.user_id)


@router.post("/billing/pay-year", response_model=BillingStateResponse)
def pay_year_by_body(
    body: PayYearRequest,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return ReconciliationGateway(db).pay_for_year(body.tenant_id, body.year, body.from_month, actor_id=admin.user_id)


@router.patch("/tenants/{tenant_id}/subscription", response_model=BillingStateResponse)
def set_plan(
    tenant_id: str,
    body: SetPlanRequest,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return ReconciliationGateway(db).set_plan(tenant_id, body.plan, actor_id=admin.user_id)


@router.post("/tenants/{tenant_id}/subscription/cancel", response_model=BillingStateResponse)
def cancel_subscription(
    tenant_id: str,
    mode: str = Query("now"),
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    """``mode=now`` cancels immediately; ``mode=period_end`` only schedules it."""
    return ReconciliationGateway(db).cancel(tenant_id, mode, actor_id=admin.user_id)


@router.post("/tenants/{tenant_id}/subscription/resume", response_model=BillingStateResponse)
def resume_subscription(
    tenant_id: str,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return ReconciliationGateway(db).resume(tenant_id, actor_id=admin.user_id)


@router.post("/invoices/{invoice_id}/void")
def void_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return invoice_to_dict(InvoiceManager(db).void_invoice(invoice_id, actor_id=admin.user_id))


@router.post("/invoices/{invoice_id}/refund")
def refund_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    return invoice_to_dict(InvoiceManager(db).refund_invoice(invoice_id, actor_id=admin.user_id))


@router.post("/users/{user_id}/payments", status_code=201)
def record_user_payment(
    user_id: UUID,
    body: RecordMonthlyPaymentRequest,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin),
):
    """Record a paid month on a user's monthly billing track."""
    ledger = MonthlyPaymentLedger(db)
    payment = ledger.record_payment(user_id, body.month_key, amount=body.amount, recorded_by=admin.user_id)
    return {"payment": payment_to_dict(payment), **ledger.month_overview(user_id)}
