"""
Order line items and derived totals.

``total``, ``discount`` and ``net_total`` on an order are never edited
directly: every change to the lines recomputes them from the item and extra
rows inside the same transaction.
"""
import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from perdexa.core.errors import BalanceError, NotFoundError, ValidationError
from perdexa.db.session import atomic
from perdexa.models.order import Order, OrderExtra, OrderItem
from perdexa.models.order_payment import OrderPayment
from perdexa.utils.dates import as_int
from perdexa.utils.money import MONEY_QUANTUM, ZERO, money_str, money_sum, to_money

logger = logging.getLogger(__name__)

CM_PER_METER = Decimal(100)
DENSITY_QUANTUM = Decimal("0.0001")


def _positive_int(value, field: str) -> int:
    number = as_int(value)
    if number is None:
        raise ValidationError("invalid_item", f"{field} must be an integer")
    if number <= 0:
        raise ValidationError("invalid_item", f"{field} must be positive")
    return number


def item_subtotal(unit_price, qty, width, file_density) -> Decimal:
    """unit_price x qty x (width / 100) x file_density, width in cm."""
    price = to_money(unit_price)
    density = Decimal(str(file_density)) if file_density is not None else Decimal(1)
    raw = price * Decimal(int(qty)) * (Decimal(int(width)) / CM_PER_METER) * density
    return raw.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def _item_fields(data: dict) -> dict:
    qty = _positive_int(data.get("qty"), "qty")
    width = _positive_int(data.get("width"), "width")
    height = _positive_int(data.get("height"), "height")
    unit_price = to_money(data.get("unit_price"))
    if unit_price < ZERO:
        raise ValidationError("invalid_item", "unit_price cannot be negative")
    density_in = data.get("file_density")
    density = to_money(density_in if density_in is not None else 1).quantize(DENSITY_QUANTUM)
    if density <= ZERO:
        raise ValidationError("invalid_item", "file_density must be positive")
    return {
        "qty": qty,
        "width": width,
        "height": height,
        "unit_price": unit_price,
        "file_density": density,
        "subtotal": item_subtotal(unit_price, qty, width, density),
        "note": data.get("note"),
    }


def _extra_fields(data: dict) -> dict:
    label = (data.get("label") or "").strip()
    if not label:
        raise ValidationError("invalid_extra", "Extra line needs a label")
    subtotal = to_money(data.get("subtotal"))
    if subtotal < ZERO:
        raise ValidationError("invalid_extra", "Extra subtotal cannot be negative")
    return {"label": label, "subtotal": subtotal}


def recompute_totals(db: Session, order: Order, discount=None) -> Order:
    """Rewrite the derived columns of ``order`` from its current rows."""
    db.flush()
    item_total = money_sum(
        row.subtotal for row in db.query(OrderItem.subtotal).filter(OrderItem.order_id == order.id)
    )
    extra_total = money_sum(
        row.subtotal for row in db.query(OrderExtra.subtotal).filter(OrderExtra.order_id == order.id)
    )
    total = item_total + extra_total

    wanted = to_money(discount) if discount is not None else to_money(order.discount or 0)
    # Clamp to [0, total]
    wanted = max(ZERO, min(wanted, total))

    order.total = total
    order.discount = wanted
    order.net_total = (total - wanted).quantize(MONEY_QUANTUM)
    db.flush()
    return order


class OrderTotals:
    def __init__(self, db: Session):
        self.db = db

    def _order(self, tenant_id: uuid.UUID, order_id: uuid.UUID) -> Order:
        order = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.tenant_id == tenant_id)
            .with_for_update()
            .first()
        )
        if order is None:
            raise NotFoundError("not_found", "Order not found")
        return order

    def create_order(
        self,
        tenant_id: uuid.UUID,
        items: Iterable[dict],
        extras: Iterable[dict] = (),
        discount=0,
        customer_name: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Order:
        item_rows = [_item_fields(dict(i)) for i in items]
        extra_rows = [_extra_fields(dict(e)) for e in extras]

        with atomic(self.db):
            order = Order(tenant_id=tenant_id, customer_name=customer_name, note=note)
            self.db.add(order)
            self.db.flush()
            for fields in item_rows:
                self.db.add(OrderItem(order_id=order.id, **fields))
            for fields in extra_rows:
                self.db.add(OrderExtra(order_id=order.id, **fields))
            recompute_totals(self.db, order, discount=discount)

        logger.info(f"[ORDERS] Created order {order.id} for tenant {tenant_id}: net {order.net_total}")
        return order

    def save_items(
        self,
        tenant_id: uuid.UUID,
        order_id: uuid.UUID,
        upserts: Sequence[dict] = (),
        deletes: Sequence[uuid.UUID] = (),
        discount=None,
        extras: Optional[Sequence[dict]] = None,
    ) -> Order:
        """
        Apply line changes and recompute the order totals.

        ``upserts`` entries with an ``id`` update that item; entries without
        one are inserted. ``extras``, when given, replaces the extra lines.
        """
        with atomic(self.db):
            order = self._order(tenant_id, order_id)
            existing = {item.id: item for item in order.items}

            for item_id in deletes or ():
                item = existing.pop(uuid.UUID(str(item_id)), None)
                if item is None:
                    raise NotFoundError("not_found", f"Item {item_id} not on this order")
                self.db.delete(item)

            for data in upserts or ():
                data = dict(data)
                fields = _item_fields(data)
                item_id = data.get("id")
                if item_id:
                    item = existing.get(uuid.UUID(str(item_id)))
                    if item is None:
                        raise NotFoundError("not_found", f"Item {item_id} not on this order")
                    for key, value in fields.items():
                        setattr(item, key, value)
                else:
                    self.db.add(OrderItem(order_id=order.id, **fields))

            if extras is not None:
                for extra in list(order.extras):
                    self.db.delete(extra)
                for data in extras:
                    self.db.add(OrderExtra(order_id=order.id, **_extra_fields(dict(data))))

            recompute_totals(self.db, order, discount=discount)

            paid = money_sum(
                row.amount for row in self.db.query(OrderPayment.amount).filter(OrderPayment.order_id == order.id)
            )
            if order.net_total < paid:
                raise BalanceError(
                    "net_total_below_paid",
                    "Order total cannot drop below what has already been paid",
                    total_paid=money_str(paid),
                )

        logger.info(f"[ORDERS] Order {order_id} lines saved: total {order.total} net {order.net_total}")
        return order
