# ledger.py
# Stock ledger: the only writer of Ingredient.current_stock, plus its audit trail

from __future__ import annotations
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from db import (
    Ingredient, IngredientHistory, UNITS, LEDGER_OPERATIONS, OP_RESTOCK, expire_cached, utcnow,
)
from errors import (
    ConcurrencyConflict, InsufficientStock, InvalidAdjustment, LedgerCorrupt, NotFound,
)

logger = logging.getLogger(__name__)

QUANTUM = Decimal("0.001")
# Numeric(12, 3): nine integer digits
QTY_LIMIT = Decimal("1e9")


def to_qty(value) -> Decimal:
    """Converts a user/DB quantity to an exact Decimal with the ledger's 3-place scale."""
    try:
        q = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAdjustment(f"invalid quantity {value!r}")
    if not q.is_finite():
        raise InvalidAdjustment(f"invalid quantity {value!r}")
    if abs(q) >= QTY_LIMIT:
        raise InvalidAdjustment(f"quantity {value!r} is out of range")
    scaled = q.quantize(QUANTUM)
    if scaled != q:
        raise InvalidAdjustment(f"quantity {value!r} has more than 3 decimal places")
    return scaled

# ---------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------
def apply_delta(session: Session, ingredient_id: int, signed_quantity, operation: str,
                order_id: Optional[int] = None, actor: Optional[str] = None,
                reason: Optional[str] = None) -> IngredientHistory:
    """
    Applies one signed stock change and appends its ledger entry, inside the caller's
    transaction. The stock row is locked (FOR UPDATE where the store supports it) and the
    write is guarded by stock_version, so a concurrent writer can never be overwritten.
    """
    if operation not in LEDGER_OPERATIONS:
        raise InvalidAdjustment(f"unknown ledger operation {operation!r}")
    delta = to_qty(signed_quantity)
    if delta == 0:
        raise InvalidAdjustment("stock change must be non-zero")

    row = session.execute(
        select(Ingredient.id, Ingredient.name, Ingredient.current_stock, Ingredient.stock_version)
        .where(Ingredient.id == ingredient_id)
        .with_for_update()
    ).first()
    if row is None:
        raise NotFound("ingredient", ingredient_id)

    previous = to_qty(row.current_stock)
    new = previous + delta
    if new < 0:
        raise InsufficientStock(row.id, row.name, previous, -delta)
    if new >= QTY_LIMIT:
        raise InvalidAdjustment(f"stock of {row.name} would exceed {QTY_LIMIT:f}")

    values = dict(current_stock=new, stock_version=row.stock_version + 1)
    if operation == OP_RESTOCK:
        values["last_restocked_at"] = utcnow()
    res = session.execute(
        update(Ingredient)
        .where(Ingredient.id == ingredient_id, Ingredient.stock_version == row.stock_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ConcurrencyConflict(f"ingredient #{ingredient_id} stock changed concurrently")
    expire_cached(session, Ingredient, ingredient_id,
                  ["current_stock", "stock_version", "last_restocked_at", "updated_at"])

    entry = IngredientHistory(
        ingredient_id=ingredient_id,
        order_id=order_id,
        operation=operation,
        quantity=delta,
        previous_stock=previous,
        new_stock=new,
        actor=actor,
        reason=reason,
    )
    session.add(entry)
    session.flush()
    logger.debug("ledger #%s: %s %s %+f -> %s", entry.id, row.name, operation, delta, new)
    return entry


def register_ingredient(session: Session, name: str, unit: str = "pcs", opening_stock=0,
                        minimum_stock=0, maximum_stock=0, unit_cost=0,
                        supplier: Optional[str] = None, description: Optional[str] = None,
                        actor: Optional[str] = None) -> Ingredient:
    """Creates an ingredient at zero stock; any opening stock enters through the ledger."""
    if unit not in UNITS:
        raise InvalidAdjustment(f"unit must be one of {', '.join(UNITS)}")
    if session.query(Ingredient).filter(Ingredient.name == name).first():
        raise InvalidAdjustment(f"ingredient {name!r} already exists")
    ing = Ingredient(
        name=name, unit=unit, description=description, supplier=supplier,
        current_stock=Decimal("0"), stock_version=0,
        minimum_stock=to_qty(minimum_stock), maximum_stock=to_qty(maximum_stock),
        unit_cost=Decimal(str(unit_cost)), is_active=True,
    )
    session.add(ing)
    session.flush()
    opening = to_qty(opening_stock)
    if opening < 0:
        raise InvalidAdjustment("opening stock cannot be negative")
    if opening > 0:
        apply_delta(session, ing.id, opening, OP_RESTOCK, actor=actor, reason="Opening stock")
    return ing

# ---------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------
def current_stock(session: Session, ingredient_id: int) -> Decimal:
    value = session.execute(
        select(Ingredient.current_stock).where(Ingredient.id == ingredient_id)
    ).scalar_one_or_none()
    if value is None:
        raise NotFound("ingredient", ingredient_id)
    return to_qty(value)


def entries_for(session: Session, ingredient_id: Optional[int] = None,
                order_id: Optional[int] = None, operation: Optional[str] = None) -> List[IngredientHistory]:
    q = select(IngredientHistory)
    if ingredient_id is not None:
        q = q.where(IngredientHistory.ingredient_id == ingredient_id)
    if order_id is not None:
        q = q.where(IngredientHistory.order_id == order_id)
    if operation is not None:
        q = q.where(IngredientHistory.operation == operation)
    q = q.order_by(IngredientHistory.created_at.asc(), IngredientHistory.id.asc())
    return list(session.scalars(q).all())


def replay_stock(session: Session, ingredient_id: int) -> Decimal:
    """Rebuilds stock from zero by walking the ingredient's ledger chain in creation order."""
    running = Decimal("0").quantize(QUANTUM)
    for e in entries_for(session, ingredient_id=ingredient_id):
        prev, qty, new = to_qty(e.previous_stock), to_qty(e.quantity), to_qty(e.new_stock)
        if prev != running:
            raise LedgerCorrupt(
                f"ledger #{e.id} for ingredient #{ingredient_id} starts at {prev}, chain is at {running}"
            )
        if prev + qty != new:
            raise LedgerCorrupt(f"ledger #{e.id}: {prev} + {qty} != {new}")
        running = new
    return running


def low_stock(session: Session, ingredient_ids: Optional[List[int]] = None) -> List[Ingredient]:
    q = session.query(Ingredient).filter(
        Ingredient.is_active == True,
        Ingredient.current_stock < Ingredient.minimum_stock,
    )
    if ingredient_ids is not None:
        q = q.filter(Ingredient.id.in_(list(ingredient_ids)))
    return q.order_by(Ingredient.name.asc()).all()

# ---------------------------------------------------------------------
# Audit tables (reconciliation / dispute investigation)
# ---------------------------------------------------------------------
LEDGER_COLUMNS = [
    "id", "created_at", "ingredient_id", "ingredient", "operation", "quantity",
    "previous_stock", "new_stock", "order_id", "actor", "reason",
]


def ledger_frame(session: Session, ingredient_id: Optional[int] = None,
                 order_id: Optional[int] = None) -> pd.DataFrame:
    names: Dict[int, str] = dict(session.execute(select(Ingredient.id, Ingredient.name)).all())
    rows = [{
        "id": e.id,
        "created_at": e.created_at,
        "ingredient_id": e.ingredient_id,
        "ingredient": names.get(e.ingredient_id, "?"),
        "operation": e.operation,
        "quantity": to_qty(e.quantity),
        "previous_stock": to_qty(e.previous_stock),
        "new_stock": to_qty(e.new_stock),
        "order_id": e.order_id,
        "actor": e.actor,
        "reason": e.reason,
    } for e in entries_for(session, ingredient_id=ingredient_id, order_id=order_id)]
    return pd.DataFrame(rows, columns=LEDGER_COLUMNS)


def reconcile(session: Session) -> pd.DataFrame:
    """One row per ingredient: stored stock against the stock replayed from its ledger."""
    rows = []
    for ing in session.query(Ingredient).order_by(Ingredient.name.asc()).all():
        stored = to_qty(ing.current_stock)
        try:
            replayed = replay_stock(session, ing.id)
            chain_ok = True
        except LedgerCorrupt as err:
            logger.warning("ledger chain broken for %s: %s", ing.name, err)
            replayed = sum((to_qty(h.quantity) for h in entries_for(session, ingredient_id=ing.id)),
                           Decimal("0"))
            chain_ok = False
        rows.append({
            "ingredient_id": ing.id,
            "ingredient": ing.name,
            "unit": ing.unit,
            "current_stock": stored,
            "replayed_stock": replayed,
            "drift": stored - replayed,
            "consistent": chain_ok and stored == replayed,
        })
    return pd.DataFrame(rows, columns=[
        "ingredient_id", "ingredient", "unit", "current_stock", "replayed_stock", "drift", "consistent",
    ])
