# engine.py
# Order/inventory consistency engine: every stock-affecting order operation runs here

from __future__ import annotations
import logging
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, selectinload

from availability import AvailabilityChange, set_override, sync_all, sync_for_ingredients, sync_products
from db import (
    Ingredient, IngredientHistory, Order, Product,
    OP_ORDER_CANCELLATION, OP_ORDER_CONSUMPTION, OP_MANUAL_ADJUSTMENT, OP_RESTOCK, OP_SPOILAGE,
    get_or_create_default_config,
)
from errors import (
    ConcurrencyConflict, EngineError, InsufficientStock, InvalidAdjustment, NotFound, translate_db_error,
)
from ledger import apply_delta, low_stock, register_ingredient, to_qty
from order_flow import (
    CANCELLED, CONFIRMED, already_confirmed, apply_status, check_transition, consumes_stock, create_order,
    restores_stock,
)
from recipes import register_product, remove_recipe_line, requirements_for_order, set_recipe_line

logger = logging.getLogger(__name__)

# operations an operator may post directly, with the sign each one requires
MANUAL_OPERATIONS = {
    OP_RESTOCK: 1,
    OP_SPOILAGE: -1,
    OP_MANUAL_ADJUSTMENT: 0,
}


class OrderInventoryEngine:
    """
    Runs confirm/cancel/adjust as single units of work against the store. Instances hold no
    shared state besides the session factory, so any number of them may run in parallel
    threads or processes; coordination is left to the store's row locks.
    """

    def __init__(self, session_factory, retries: Optional[int] = None):
        self.session_factory = session_factory
        if retries is None:
            with session_factory() as s:
                retries = get_or_create_default_config(s).conflict_retries
        self.retries = max(int(retries), 0)

    # -----------------------------------------------------------------
    # Unit of work
    # -----------------------------------------------------------------
    def _run(self, label: str, fn: Callable[[Session], object]):
        """Runs fn in one transaction, retrying from scratch on store-detected conflicts."""
        attempt = 0
        while True:
            try:
                with self.session_factory() as session:
                    with session.begin():
                        return fn(session)
            except ConcurrencyConflict as e:
                conflict = e
            except DBAPIError as e:
                conflict = translate_db_error(e)
                if conflict is None:
                    raise
            attempt += 1
            if attempt > self.retries:
                logger.warning("%s gave up after %s attempts: %s", label, attempt, conflict)
                raise conflict
            logger.info("%s hit a conflict (attempt %s), retrying: %s", label, attempt, conflict)

    @staticmethod
    def _load_order(session: Session, order_id: int) -> Order:
        order = session.execute(
            select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
        ).scalar_one_or_none()
        if order is None:
            raise NotFound("order", order_id)
        return order

    # -----------------------------------------------------------------
    # Orders
    # -----------------------------------------------------------------
    def create_order(self, order_type: str, items: Iterable[Tuple[int, int]], actor: Optional[str] = None,
                     **kw) -> Order:
        items = list(items)

        def work(session):
            o = create_order(session, order_type, items, actor=actor, **kw)
            return self._load_order(session, o.id)

        return self._run("create_order", work)

    def confirm_order(self, order_id: int, actor: Optional[str] = None) -> Order:
        """
        pending -> confirmed. Consumes every recipe ingredient of the order in the same
        transaction as the status change: either all deltas and the status commit, or nothing.
        Confirming an order that is already confirmed or further along is a no-op.
        """
        def work(session):
            order = self._load_order(session, order_id)
            if already_confirmed(order.status) or not check_transition(order.status, CONFIRMED, order.id):
                logger.info("order %s already confirmed, nothing to do", order.order_number)
                return order, set()
            needed = requirements_for_order(session, order) if consumes_stock(order.status, CONFIRMED) else {}
            apply_status(session, order, CONFIRMED, actor)
            # ascending ids: every writer locks ingredient rows in the same order
            for ing_id in sorted(needed):
                apply_delta(session, ing_id, -needed[ing_id], OP_ORDER_CONSUMPTION,
                            order_id=order.id, actor=actor,
                            reason=f"Consumption for order {order.order_number}")
            return order, set(needed)

        try:
            order, touched = self._run("confirm_order", work)
        except InsufficientStock as e:
            logger.warning("order #%s not confirmed: %s", order_id, e)
            raise
        if touched:
            logger.info("order %s confirmed, consumed %s ingredients", order.order_number, len(touched))
            self.sync_availability(touched)
        return order

    def cancel_order(self, order_id: int, actor: Optional[str] = None, reason: Optional[str] = None) -> Order:
        """
        Cancels the order and hands back whatever its confirmation consumed, provided the
        order has not been served yet. Pending orders never consumed anything.
        """
        def work(session):
            order = self._load_order(session, order_id)
            current = order.status
            if not check_transition(current, CANCELLED, order.id):
                logger.info("order %s already cancelled, nothing to do", order.order_number)
                return order, set()
            to_restore = self._outstanding_consumption(session, order.id) if restores_stock(current, CANCELLED) else {}
            apply_status(session, order, CANCELLED, actor, notes=reason)
            for ing_id in sorted(to_restore):
                apply_delta(session, ing_id, to_restore[ing_id], OP_ORDER_CANCELLATION,
                            order_id=order.id, actor=actor,
                            reason=f"Restored on cancellation of order {order.order_number}")
            return order, set(to_restore)

        order, touched = self._run("cancel_order", work)
        logger.info("order %s cancelled, restored %s ingredients", order.order_number, len(touched))
        if touched:
            self.sync_availability(touched)
        return order

    def advance_order(self, order_id: int, target: str, actor: Optional[str] = None,
                      notes: Optional[str] = None) -> Order:
        """Generic status change; routes the two stock-affecting targets to their operations."""
        if target == CONFIRMED:
            return self.confirm_order(order_id, actor=actor)
        if target == CANCELLED:
            return self.cancel_order(order_id, actor=actor, reason=notes)

        def work(session):
            order = self._load_order(session, order_id)
            if check_transition(order.status, target, order.id):
                apply_status(session, order, target, actor, notes=notes)
            return order

        return self._run("advance_order", work)

    @staticmethod
    def _outstanding_consumption(session: Session, order_id: int) -> Dict[int, Decimal]:
        """Per ingredient: consumed by the order and not yet handed back."""
        out: Dict[int, Decimal] = {}
        rows = session.execute(
            select(IngredientHistory.ingredient_id, IngredientHistory.operation, IngredientHistory.quantity)
            .where(IngredientHistory.order_id == order_id,
                   IngredientHistory.operation.in_([OP_ORDER_CONSUMPTION, OP_ORDER_CANCELLATION]))
        ).all()
        for r in rows:
            # consumption entries are negative, restorations positive
            out[r.ingredient_id] = out.get(r.ingredient_id, Decimal("0")) - to_qty(r.quantity)
        return {k: v for k, v in out.items() if v > 0}

    # -----------------------------------------------------------------
    # Stock
    # -----------------------------------------------------------------
    def adjust_stock(self, ingredient_id: int, signed_quantity, operation: str, actor: Optional[str],
                     reason: Optional[str] = None) -> IngredientHistory:
        """Operator restock/adjustment/spoilage. Negative results are rejected, never clamped."""
        if operation not in MANUAL_OPERATIONS:
            raise InvalidAdjustment(f"{operation!r} cannot be posted manually")
        qty = to_qty(signed_quantity)
        sign = MANUAL_OPERATIONS[operation]
        if qty == 0 or (sign > 0 and qty < 0) or (sign < 0 and qty > 0):
            raise InvalidAdjustment(f"{operation} needs a {'positive' if sign > 0 else 'negative' if sign < 0 else 'non-zero'} quantity")

        def work(session):
            return apply_delta(session, ingredient_id, qty, operation, actor=actor, reason=reason)

        try:
            entry = self._run("adjust_stock", work)
        except InsufficientStock as e:
            logger.warning("adjustment by %s rejected: %s", actor, e)
            raise
        logger.info("%s on ingredient #%s by %s: %s -> %s", operation, ingredient_id, actor,
                    entry.previous_stock, entry.new_stock)
        self.sync_availability({ingredient_id})
        return entry

    def register_ingredient(self, name: str, actor: Optional[str] = None, **kw) -> Ingredient:
        def work(session):
            ing = register_ingredient(session, name, actor=actor, **kw)
            session.refresh(ing)
            return ing

        ing = self._run("register_ingredient", work)
        self.sync_availability({ing.id})
        return ing

    def register_product(self, name: str, price=0, recipe: Optional[Dict[int, object]] = None) -> Product:
        def work(session):
            p = register_product(session, name, price, recipe)
            sync_products(session, [p.id])
            session.refresh(p)
            return p

        return self._run("register_product", work)

    def set_recipe_line(self, product_id: int, ingredient_id: int, quantity_required) -> None:
        def work(session):
            set_recipe_line(session, product_id, ingredient_id, quantity_required)
            sync_products(session, [product_id])

        self._run("set_recipe_line", work)

    def remove_recipe_line(self, product_id: int, ingredient_id: int) -> bool:
        def work(session):
            removed = remove_recipe_line(session, product_id, ingredient_id)
            if removed:
                sync_products(session, [product_id])
            return removed

        return self._run("remove_recipe_line", work)

    def set_override(self, product_id: int, value: Optional[bool], actor: Optional[str] = None) -> Product:
        def work(session):
            return set_override(session, product_id, value)

        p = self._run("set_override", work)
        logger.info("availability override for %s set to %s by %s", p.name, value, actor)
        return p

    # -----------------------------------------------------------------
    # Availability
    # -----------------------------------------------------------------
    def sync_availability(self, ingredient_ids: Optional[Iterable[int]] = None) -> List[AvailabilityChange]:
        """
        Post-commit re-derivation of product availability. It only reads committed stock, so a
        failure leaves flags stale until the next pass but never touches the ledger.
        """
        ids: Optional[Set[int]] = None if ingredient_ids is None else set(ingredient_ids)

        def work(session):
            changes = sync_all(session) if ids is None else sync_for_ingredients(session, ids)
            for ing in low_stock(session, None if ids is None else list(ids)):
                logger.warning("low stock: %s at %s %s (minimum %s)",
                               ing.name, ing.current_stock, ing.unit, ing.minimum_stock)
            return changes

        try:
            return self._run("sync_availability", work)
        except (EngineError, DBAPIError):
            logger.exception("availability sync failed for ingredients %s", sorted(ids) if ids else "all")
            return []
