from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import update

from availability import check_stock, product_status, set_override, sync_all, sync_for_ingredients, sync_products
from db import Ingredient, Product
from errors import NotFound
from ledger import apply_delta


def _available(SessionLocal, product_id):
    with SessionLocal() as s:
        return s.get(Product, product_id).is_available


def _drain(SessionLocal, ingredient_id):
    with SessionLocal() as s, s.begin():
        stock = s.get(Ingredient, ingredient_id).current_stock
        apply_delta(s, ingredient_id, -stock, "spoilage")


def test_depleted_ingredient_blocks_every_product_using_it(SessionLocal, kitchen):
    _drain(SessionLocal, kitchen.beef)
    with SessionLocal() as s, s.begin():
        changes = sync_for_ingredients(s, [kitchen.beef])
    assert sorted((c.product_name, c.now_available) for c in changes) == [
        ("Burger", False), ("Cheeseburger", False),
    ]
    assert _available(SessionLocal, kitchen.salad) is True

    with SessionLocal() as s, s.begin():
        apply_delta(s, kitchen.beef, 1, "restock")
        changes = sync_for_ingredients(s, [kitchen.beef])
    assert {c.product_id for c in changes} == {kitchen.burger, kitchen.cheeseburger}
    assert all(c.was_available is False and c.now_available is True for c in changes)


def test_sync_reports_only_changes(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        assert sync_all(s) == []


def test_product_without_recipe_is_always_available(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        s.get(Product, kitchen.water).is_available = False
    with SessionLocal() as s, s.begin():
        changes = sync_all(s)
    assert [(c.product_id, c.now_available) for c in changes] == [(kitchen.water, True)]
    with SessionLocal() as s:
        assert product_status(s, kitchen.water).status == "available"


def test_sync_refreshes_loaded_products(SessionLocal, kitchen):
    _drain(SessionLocal, kitchen.lettuce)
    with SessionLocal() as s, s.begin():
        salad = s.get(Product, kitchen.salad)
        assert salad.is_available is True
        sync_products(s, [kitchen.salad])
        assert salad.is_available is False


def test_inactive_ingredient_does_not_block(SessionLocal, kitchen):
    _drain(SessionLocal, kitchen.lettuce)
    with SessionLocal() as s, s.begin():
        s.get(Ingredient, kitchen.lettuce).is_active = False
    with SessionLocal() as s, s.begin():
        sync_all(s)
    assert _available(SessionLocal, kitchen.salad) is True


def test_positive_stock_below_recipe_need_still_counts_as_available(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        apply_delta(s, kitchen.cheese, "-1.99", "spoilage")
        sync_all(s)
    assert _available(SessionLocal, kitchen.cheeseburger) is True


def test_product_status_levels(SessionLocal, kitchen):
    with SessionLocal() as s:
        assert product_status(s, kitchen.salad).status == "available"
    with SessionLocal() as s, s.begin():
        apply_delta(s, kitchen.beef, -4, "spoilage")
    with SessionLocal() as s:
        st = product_status(s, kitchen.burger)
    assert (st.available, st.status) == (True, "low_stock")
    assert st.limiting_ingredients == [
        {"name": "Beef", "current_stock": Decimal("1"), "minimum_stock": Decimal("1")},
    ]

    _drain(SessionLocal, kitchen.beef)
    with SessionLocal() as s:
        st = product_status(s, kitchen.cheeseburger)
    assert (st.available, st.status) == (False, "out_of_stock")
    assert st.missing_ingredients == ["Beef"]


def test_check_stock_lists_every_shortage(SessionLocal, kitchen):
    with SessionLocal() as s:
        result = check_stock(s, [(kitchen.cheeseburger, 12), (kitchen.burger, 14)])
    assert result.valid is False
    by_name = {sh.name: sh for sh in result.shortages}
    assert set(by_name) == {"Beef", "Bun"}
    assert by_name["Beef"].needs == Decimal("5.2")
    assert by_name["Beef"].shortage == Decimal("0.2")
    assert by_name["Bun"].has == Decimal("10")
    assert by_name["Bun"].unit == "pcs"


def test_check_stock_max_portions(SessionLocal, kitchen):
    with SessionLocal() as s:
        result = check_stock(s, [(kitchen.salad, 3)])
        no_recipe = check_stock(s, [(kitchen.water, 3)])
    assert result.valid is True
    assert result.shortages == []
    assert result.max_portions == 10
    assert no_recipe.valid is True
    assert no_recipe.max_portions is None


def test_override(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        set_override(s, kitchen.salad, False)
    with SessionLocal() as s:
        p = s.get(Product, kitchen.salad)
        assert p.is_available is True
        assert p.is_orderable is False
    with SessionLocal() as s, s.begin():
        set_override(s, kitchen.salad, None)
    with SessionLocal() as s:
        assert s.get(Product, kitchen.salad).is_orderable is True
    with SessionLocal() as s, s.begin():
        with pytest.raises(NotFound):
            set_override(s, 5150, True)


def test_flag_is_derived_from_store_not_from_cache(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        s.execute(update(Ingredient).where(Ingredient.id == kitchen.bun).values(current_stock=0))
        changes = sync_for_ingredients(s, [kitchen.bun])
    assert {c.product_id for c in changes} == {kitchen.burger, kitchen.cheeseburger}
