# seed_basic.py
# Simple demo seed (idempotent). Opening stock goes through the ledger like any other change.
import os
import logging

from db import init_db, make_engine, make_sessionmaker, Ingredient, Product, Order
from engine import OrderInventoryEngine

logger = logging.getLogger("seed_basic")

INGREDIENTS = [
    # name, unit, opening stock, minimum
    ("Beef Patty", "pcs", "40", "10"),
    ("Burger Bun", "pcs", "40", "10"),
    ("Cheese Slice", "pcs", "60", "15"),
    ("Kentang", "kg", "8", "2"),
    ("Cooking Oil", "l", "5", "1"),
    ("Iced Tea Mix", "g", "500", "100"),
]

PRODUCTS = [
    # name, price, {ingredient: quantity per unit}
    ("Classic Burger", "7.90", {"Beef Patty": "1", "Burger Bun": "1"}),
    ("Double Cheeseburger", "11.50", {"Beef Patty": "2", "Burger Bun": "1", "Cheese Slice": "2"}),
    ("French Fries", "3.50", {"Kentang": "0.25", "Cooking Oil": "0.05"}),
    ("Iced Tea", "2.00", {"Iced Tea Mix": "20"}),
    ("Bottled Water", "1.20", {}),
]


def run():
    engine = init_db(make_engine())
    SessionLocal = make_sessionmaker(engine)
    pos = OrderInventoryEngine(SessionLocal)

    # Ingredients
    idmap = {}
    for name, unit, opening, minimum in INGREDIENTS:
        with SessionLocal() as s:
            obj = s.query(Ingredient).filter(Ingredient.name == name).first()
        if not obj:
            obj = pos.register_ingredient(name, actor="seed", unit=unit, opening_stock=opening,
                                          minimum_stock=minimum)
        idmap[name] = obj.id

    # Products + recipes
    pmap = {}
    for name, price, recipe in PRODUCTS:
        with SessionLocal() as s:
            p = s.query(Product).filter(Product.name == name).first()
        if not p:
            p = pos.register_product(name, price, {idmap[i]: q for i, q in recipe.items()})
        pmap[name] = p.id

    # Order
    with SessionLocal() as s:
        has_orders = s.query(Order).count() > 0
    if not has_orders:
        o = pos.create_order("dine_in", [(pmap["Classic Burger"], 2), (pmap["French Fries"], 2)],
                             actor="seed", table_number="1", notes="Demo order")
        logger.info("demo order %s left pending", o.order_number)

    pos.sync_availability()
    logger.info("seed finished: %s ingredients, %s products", len(idmap), len(pmap))


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    run()
