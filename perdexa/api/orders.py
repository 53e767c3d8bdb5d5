"""
Order lines and order payments, scoped to the caller's tenant.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from perdexa.api.deps import Actor, require_tenant_actor
from perdexa.db.session import get_db
from perdexa.models.order import Order
from perdexa.schemas.order import OrderCreate, OrderItemsUpdate, OrderPaymentCreate, PaymentReverseRequest
from perdexa.services.order_payments import OrderPaymentLedger, payment_to_dict
from perdexa.services.order_totals import OrderTotals
from perdexa.utils.dates import isoformat
from perdexa.utils.money import money_str

router = APIRouter()


def _order_to_dict(order: Order) -> dict:
    return {
        "id": str(order.id),
        "status": order.status,
        "customer_name": order.customer_name,
        "total": money_str(order.total),
        "discount": money_str(order.discount),
        "net_total": money_str(order.net_total),
        "items": [
            {
                "id": str(item.id),
                "qty": item.qty,
                "width": item.width,
                "height": item.height,
                "unit_price": money_str(item.unit_price),
                "file_density": str(item.file_density),
                "subtotal": money_str(item.subtotal),
                "note": item.note,
            }
            for item in order.items
        ],
        "extras": [{"id": str(e.id), "label": e.label, "subtotal": money_str(e.subtotal)} for e in order.extras],
        "created_at": isoformat(order.created_at),
    }


def _payments_response(ledger: OrderPaymentLedger, actor: Actor, order_id: UUID, totals=None) -> dict:
    totals = totals or ledger.totals(actor.tenant_id, order_id)
    payments = ledger.list_payments(actor.tenant_id, order_id)
    return {
        "order_id": str(order_id),
        "totals": totals.to_dict(),
        "payments": [payment_to_dict(p) for p in payments],
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_order(
    body: OrderCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_tenant_actor),
):
    order = OrderTotals(db).create_order(
        actor.tenant_id,
        [item.model_dump(exclude={"id"}) for item in body.items],
        extras=[extra.model_dump() for extra in body.extras],
        discount=body.discount,
        customer_name=body.customer_name,
        note=body.note,
    )
    db.refresh(order)
    return _order_to_dict(order)


@router.patch("/{order_id}/items")
def save_items(
    order_id: UUID,
    body: OrderItemsUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_tenant_actor),
):
    """Insert/update/delete lines; totals are recomputed server side."""
    order = OrderTotals(db).save_items(
        actor.tenant_id,
        order_id,
        upserts=[item.model_dump() for item in body.upserts],
        deletes=body.deletes,
        discount=body.discount,
        extras=[extra.model_dump() for extra in body.extras] if body.extras is not None else None,
    )
    db.refresh(order)
    return _order_to_dict(order)


@router.get("/{order_id}/payments")
def list_payments(
    order_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_tenant_actor),
):
    return _payments_response(OrderPaymentLedger(db), actor, order_id)


@router.post("/{order_id}/payments", status_code=status.HTTP_201_CREATED)
def add_payment(
    order_id: UUID,
    body: OrderPaymentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_tenant_actor),
):
    ledger = OrderPaymentLedger(db)
    totals = ledger.add_payment(
        actor.tenant_id,
        order_id,
        body.amount,
        body.method,
        note=body.note,
        paid_at=body.paid_at,
        created_by=actor.user_id,
    )
    return _payments_response(ledger, actor, order_id, totals)


@router.post("/{order_id}/payments/{payment_id}/reverse", status_code=status.HTTP_201_CREATED)
def reverse_payment(
    order_id: UUID,
    payment_id: UUID,
    body: Optional[PaymentReverseRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_tenant_actor),
):
    ledger = OrderPaymentLedger(db)
    totals = ledger.reverse_payment(actor.tenant_id, order_id, payment_id, note=body.note if body else None, created_by=actor.user_id)
    return _payments_response(ledger, actor, order_id, totals)
