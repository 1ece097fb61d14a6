# order_flow.py
# Order state machine: legal transitions, order creation and the single status writer

from __future__ import annotations
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from db import Config, Order, OrderItem, OrderStatusHistory, Product, ORDER_TYPES, utcnow
from errors import ConcurrencyConflict, InvalidOrder, InvalidTransition

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# States
# ---------------------------------------------------------------------
PENDING = "pending"
CONFIRMED = "confirmed"
PREPARING = "preparing"
READY = "ready"
SERVED = "served"
COMPLETED = "completed"
CANCELLED = "cancelled"

ORDER_STATUSES = (PENDING, CONFIRMED, PREPARING, READY, SERVED, COMPLETED, CANCELLED)

TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {PREPARING, CANCELLED},
    PREPARING: {READY, CANCELLED},
    READY: {SERVED, CANCELLED},
    SERVED: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
}

# states that hold consumed stock which a cancellation hands back
RESTORABLE = {CONFIRMED, PREPARING, READY}

_STAMPS = {
    CONFIRMED: "confirmed_at",
    SERVED: "served_at",
    COMPLETED: "completed_at",
    CANCELLED: "cancelled_at",
}

# per-item status each order status pushes open items to
_ITEM_CASCADE = {
    PREPARING: ("preparing", {"pending"}),
    READY: ("ready", {"pending", "preparing"}),
    SERVED: ("served", {"pending", "preparing", "ready"}),
    CANCELLED: ("cancelled", {"pending", "preparing", "ready"}),
}

MONEY_Q = Decimal("0.01")


def check_transition(current: str, target: str, order_id: Optional[int] = None) -> bool:
    """True when the transition must be applied, False for a repeated request; raises if illegal."""
    if current not in TRANSITIONS or target not in TRANSITIONS:
        raise InvalidTransition(current, target, order_id)
    if current == target:
        return False
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current, target, order_id)
    return True


def consumes_stock(current: str, target: str) -> bool:
    return current == PENDING and target == CONFIRMED


def restores_stock(current: str, target: str) -> bool:
    return target == CANCELLED and current in RESTORABLE


def already_confirmed(status: str) -> bool:
    """True once the order has passed through confirmation and is still live."""
    return status in (CONFIRMED, PREPARING, READY, SERVED, COMPLETED)

# ---------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------
def _tax_rate(session: Session) -> Decimal:
    cfg = session.query(Config).first()
    return Decimal(str(cfg.tax_rate)) if cfg and cfg.tax_rate is not None else Decimal("0")


def create_order(session: Session, order_type: str, items: Iterable[Tuple[int, int]],
                 table_number: Optional[str] = None, customer_name: Optional[str] = None,
                 notes: Optional[str] = None, discount=0, actor: Optional[str] = None) -> Order:
    """Creates a pending order; items are (product_id, quantity) pairs priced from the catalog."""
    if order_type not in ORDER_TYPES:
        raise InvalidOrder(f"order type must be one of {', '.join(ORDER_TYPES)}")
    items = list(items)
    if not items:
        raise InvalidOrder("an order needs at least one item")

    o = Order(order_type=order_type, status=PENDING, table_number=table_number,
              customer_name=customer_name, notes=notes, created_by=actor)
    session.add(o)
    session.flush()
    subtotal = Decimal("0")
    for product_id, qty in items:
        if int(qty) != qty or int(qty) <= 0:
            raise InvalidOrder(f"quantity for product #{product_id} must be a positive whole number")
        p = session.get(Product, product_id)
        if p is None or not p.is_active:
            raise InvalidOrder(f"product #{product_id} is not on the menu")
        if not p.is_orderable:
            raise InvalidOrder(f"{p.name} is currently unavailable")
        price = Decimal(str(p.price))
        o.items.append(OrderItem(product_id=p.id, quantity=int(qty), unit_price=price))
        subtotal += price * int(qty)

    discount = Decimal(str(discount))
    if discount < 0 or discount > subtotal:
        raise InvalidOrder("discount must be between zero and the subtotal")
    tax = (subtotal * _tax_rate(session)).quantize(MONEY_Q, rounding=ROUND_HALF_UP)
    o.subtotal = subtotal
    o.tax_amount = tax
    o.discount_amount = discount
    o.total_amount = subtotal + tax - discount
    o.order_number = f"ORD-{utcnow():%Y%m%d}-{o.id:05d}"
    session.add(OrderStatusHistory(order_id=o.id, previous_status=None, new_status=PENDING,
                                   changed_by=actor, notes="Order created"))
    session.flush()
    logger.info("order %s created (%s items, total %s)", o.order_number, len(items), o.total_amount)
    return o

# ---------------------------------------------------------------------
# Status writer
# ---------------------------------------------------------------------
def apply_status(session: Session, order: Order, target: str, actor: Optional[str] = None,
                 notes: Optional[str] = None) -> Order:
    """
    Moves the order to target inside the caller's transaction. The write only lands if the
    row still holds the status this call read; otherwise another writer got there first and
    ConcurrencyConflict is raised so the whole operation can be retried.
    """
    current = order.status
    now = utcnow()
    values = {"status": target, "updated_at": now}
    if target in _STAMPS:
        values[_STAMPS[target]] = now
    if target == CANCELLED and notes:
        values["cancel_reason"] = notes
    res = session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ConcurrencyConflict(f"order #{order.id} left {current!r} concurrently")
    for key, value in values.items():
        set_committed_value(order, key, value)

    if target in _ITEM_CASCADE:
        new_item_status, from_statuses = _ITEM_CASCADE[target]
        for it in order.items:
            if it.status in from_statuses:
                it.status = new_item_status

    session.add(OrderStatusHistory(order_id=order.id, previous_status=current, new_status=target,
                                   changed_by=actor, notes=notes))
    session.flush()
    return order
