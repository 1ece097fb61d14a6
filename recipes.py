# recipes.py
# Recipe index: product -> (ingredient, quantity per unit)

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from db import Ingredient, Order, Product, ProductIngredient
from errors import InvalidAdjustment, InvalidRecipe, NotFound
from ledger import to_qty


def ingredients_for(session: Session, product_id: int) -> List[Tuple[int, Decimal]]:
    """Recipe lines of a product over active ingredients, ordered by ingredient id."""
    if session.get(Product, product_id) is None:
        raise NotFound("product", product_id)
    rows = session.execute(
        select(ProductIngredient.ingredient_id, ProductIngredient.quantity_required)
        .join(Ingredient, Ingredient.id == ProductIngredient.ingredient_id)
        .where(ProductIngredient.product_id == product_id, Ingredient.is_active == True)
        .order_by(ProductIngredient.ingredient_id.asc())
    ).all()
    return [(r.ingredient_id, to_qty(r.quantity_required)) for r in rows]


def requirements_for_items(session: Session, items: Iterable[Tuple[int, int]]) -> Dict[int, Decimal]:
    """Sums ingredient needs over (product_id, quantity) pairs."""
    totals: Dict[int, Decimal] = {}
    recipes: Dict[int, List[Tuple[int, Decimal]]] = {}
    for product_id, qty in items:
        if product_id not in recipes:
            recipes[product_id] = ingredients_for(session, product_id)
        for ing_id, per_unit in recipes[product_id]:
            totals[ing_id] = totals.get(ing_id, Decimal("0")) + per_unit * int(qty)
    return totals


def requirements_for_order(session: Session, order: Order) -> Dict[int, Decimal]:
    return requirements_for_items(
        session, [(it.product_id, it.quantity) for it in order.items if it.status != "cancelled"]
    )


def products_using(session: Session, ingredient_ids: Iterable[int]) -> Set[int]:
    ids = list(set(ingredient_ids))
    if not ids:
        return set()
    return set(session.scalars(
        select(ProductIngredient.product_id).where(ProductIngredient.ingredient_id.in_(ids))
    ).all())

# ---------------------------------------------------------------------
# Catalog maintenance
# ---------------------------------------------------------------------
def register_product(session: Session, name: str, price=0,
                     recipe: Optional[Dict[int, object]] = None) -> Product:
    if session.query(Product).filter(Product.name == name).first():
        raise InvalidRecipe(f"product {name!r} already exists")
    p = Product(name=name, price=Decimal(str(price)), is_active=True, is_available=True)
    session.add(p)
    session.flush()
    for ing_id, qty in (recipe or {}).items():
        set_recipe_line(session, p.id, ing_id, qty)
    return p


def set_recipe_line(session: Session, product_id: int, ingredient_id: int, quantity_required) -> ProductIngredient:
    """Creates or updates the single recipe line for (product, ingredient)."""
    try:
        qty = to_qty(quantity_required)
    except InvalidAdjustment as e:
        raise InvalidRecipe(e.message) from e
    if qty <= 0:
        raise InvalidRecipe("quantity_required must be positive")
    if session.get(Product, product_id) is None:
        raise NotFound("product", product_id)
    if session.get(Ingredient, ingredient_id) is None:
        raise NotFound("ingredient", ingredient_id)
    line = session.query(ProductIngredient).filter(
        ProductIngredient.product_id == product_id,
        ProductIngredient.ingredient_id == ingredient_id,
    ).first()
    if line:
        line.quantity_required = qty
    else:
        line = ProductIngredient(product_id=product_id, ingredient_id=ingredient_id, quantity_required=qty)
        session.add(line)
    session.flush()
    return line


def remove_recipe_line(session: Session, product_id: int, ingredient_id: int) -> bool:
    line = session.query(ProductIngredient).filter(
        ProductIngredient.product_id == product_id,
        ProductIngredient.ingredient_id == ingredient_id,
    ).first()
    if not line:
        return False
    session.delete(line)
    session.flush()
    return True
