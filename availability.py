# availability.py
# Derives Product.is_available from recipe ingredient stock

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from db import Ingredient, Product, ProductIngredient, utcnow
from errors import NotFound
from ledger import to_qty
from recipes import ingredients_for, products_using, requirements_for_items

logger = logging.getLogger(__name__)


@dataclass
class AvailabilityChange:
    product_id: int
    product_name: str
    was_available: bool
    now_available: bool


@dataclass
class ProductStatus:
    product_id: int
    available: bool
    status: str  # available | low_stock | out_of_stock
    missing_ingredients: List[str] = field(default_factory=list)
    limiting_ingredients: List[Dict[str, object]] = field(default_factory=list)


@dataclass
class Shortage:
    ingredient_id: int
    name: str
    unit: str
    has: Decimal
    needs: Decimal

    @property
    def shortage(self) -> Decimal:
        return self.needs - self.has


@dataclass
class StockCheck:
    valid: bool
    shortages: List[Shortage] = field(default_factory=list)
    max_portions: Optional[int] = None


def _blocked():
    """EXISTS(an active recipe ingredient of the outer product is at or below zero)."""
    return (
        select(ProductIngredient.id)
        .join(Ingredient, Ingredient.id == ProductIngredient.ingredient_id)
        .where(
            ProductIngredient.product_id == Product.id,
            Ingredient.is_active == True,
            Ingredient.current_stock <= 0,
        )
        .exists()
    )

# ---------------------------------------------------------------------
# Synchronisation
# ---------------------------------------------------------------------
def sync_products(session: Session, product_ids: Iterable[int]) -> List[AvailabilityChange]:
    """
    Recomputes is_available for the given products in one statement, so the flag is
    always derived from the stock visible to this transaction and never from a cached value.
    """
    ids = sorted(set(product_ids))
    if not ids:
        return []
    session.flush()
    before: Dict[int, Tuple[str, bool]] = {
        r.id: (r.name, bool(r.is_available))
        for r in session.execute(select(Product.id, Product.name, Product.is_available)
                                 .where(Product.id.in_(ids))).all()
    }
    blocked = _blocked()
    session.execute(
        update(Product)
        .where(Product.id.in_(ids), Product.is_available == blocked)
        .values(is_available=~blocked, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    after: Dict[int, bool] = {
        r.id: bool(r.is_available)
        for r in session.execute(select(Product.id, Product.is_available)
                                 .where(Product.id.in_(ids))).all()
    }
    changes = []
    for pid in ids:
        if pid not in before:
            continue
        name, was = before[pid]
        now = after[pid]
        if was != now:
            changes.append(AvailabilityChange(pid, name, was, now))
            logger.info("product %s is now %s", name, "available" if now else "unavailable")
        obj = session.identity_map.get(session.identity_key(Product, pid))
        if obj is not None:
            session.expire(obj, ["is_available", "updated_at"])
    return changes


def sync_for_ingredients(session: Session, ingredient_ids: Iterable[int]) -> List[AvailabilityChange]:
    return sync_products(session, products_using(session, ingredient_ids))


def sync_all(session: Session) -> List[AvailabilityChange]:
    """Full resync; products without recipe lines come out available."""
    return sync_products(session, session.scalars(select(Product.id)).all())


def set_override(session: Session, product_id: int, value: Optional[bool]) -> Product:
    """Manual availability override; None hands the product back to the derived flag."""
    p = session.get(Product, product_id)
    if p is None:
        raise NotFound("product", product_id)
    p.availability_override = value
    session.flush()
    return p

# ---------------------------------------------------------------------
# Read-only checks
# ---------------------------------------------------------------------
def product_status(session: Session, product_id: int) -> ProductStatus:
    lines = ingredients_for(session, product_id)
    if not lines:
        return ProductStatus(product_id, True, "available")
    ings = {i.id: i for i in session.query(Ingredient).filter(
        Ingredient.id.in_([ing_id for ing_id, _ in lines])).populate_existing().all()}
    missing: List[str] = []
    limiting: List[Dict[str, object]] = []
    for ing_id, _ in lines:
        ing = ings[ing_id]
        stock = to_qty(ing.current_stock)
        minimum = to_qty(ing.minimum_stock)
        if stock <= 0:
            missing.append(ing.name)
        if stock <= minimum:
            limiting.append({"name": ing.name, "current_stock": stock, "minimum_stock": minimum})
    if missing:
        return ProductStatus(product_id, False, "out_of_stock", missing, limiting)
    if limiting:
        return ProductStatus(product_id, True, "low_stock", missing, limiting)
    return ProductStatus(product_id, True, "available")


def check_stock(session: Session, items: Iterable[Tuple[int, int]]) -> StockCheck:
    """Pre-order validation: every shortage plus the whole portions current stock can make."""
    items = list(items)
    needed = requirements_for_items(session, items)
    stock = {
        i.id: i for i in session.query(Ingredient).filter(Ingredient.id.in_(list(needed))).populate_existing().all()
    }
    shortages = []
    for ing_id in sorted(needed):
        ing = stock[ing_id]
        has = to_qty(ing.current_stock)
        if has < needed[ing_id]:
            shortages.append(Shortage(ing_id, ing.name, ing.unit, has, needed[ing_id]))

    max_portions: Optional[int] = None
    for product_id, _ in items:
        for ing_id, per_unit in ingredients_for(session, product_id):
            portions = int(to_qty(stock[ing_id].current_stock) // per_unit)
            max_portions = portions if max_portions is None else min(max_portions, portions)
    return StockCheck(valid=not shortages, shortages=shortages, max_portions=max_portions)
