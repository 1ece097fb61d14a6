from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from db import init_db, make_engine, make_sessionmaker
from engine import OrderInventoryEngine
from ledger import current_stock


@pytest.fixture()
def SessionLocal(tmp_path):
    # file-backed so several threads can share the store
    engine = init_db(make_engine(f"sqlite:///{tmp_path / 'pos.db'}"))
    try:
        yield make_sessionmaker(engine)
    finally:
        engine.dispose()


@pytest.fixture()
def pos_engine(SessionLocal) -> OrderInventoryEngine:
    return OrderInventoryEngine(SessionLocal)


@pytest.fixture()
def stock_of(SessionLocal):
    def _stock(ingredient_id: int) -> Decimal:
        with SessionLocal() as s:
            return current_stock(s, ingredient_id)
    return _stock


@pytest.fixture()
def kitchen(pos_engine) -> SimpleNamespace:
    beef = pos_engine.register_ingredient("Beef", unit="kg", opening_stock="5", minimum_stock="1")
    bun = pos_engine.register_ingredient("Bun", unit="pcs", opening_stock="10", minimum_stock="2")
    cheese = pos_engine.register_ingredient("Cheese", unit="kg", opening_stock="2")
    lettuce = pos_engine.register_ingredient("Lettuce", unit="kg", opening_stock="1")
    burger = pos_engine.register_product("Burger", "8.50", {beef.id: "0.2", bun.id: 1})
    cheeseburger = pos_engine.register_product(
        "Cheeseburger", "9.50", {beef.id: "0.2", bun.id: 1, cheese.id: "0.05"}
    )
    salad = pos_engine.register_product("Salad", "6.00", {lettuce.id: "0.1"})
    water = pos_engine.register_product("Water", "1.50")
    return SimpleNamespace(
        beef=beef.id, bun=bun.id, cheese=cheese.id, lettuce=lettuce.id,
        burger=burger.id, cheeseburger=cheeseburger.id, salad=salad.id, water=water.id,
    )
