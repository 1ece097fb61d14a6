from __future__ import annotations

from decimal import Decimal

import pytest

from db import Ingredient, ProductIngredient
from errors import InvalidRecipe, NotFound
from order_flow import create_order
from recipes import (
    ingredients_for, products_using, register_product, remove_recipe_line, requirements_for_items,
    requirements_for_order, set_recipe_line,
)


def test_ingredients_for_lists_lines_by_ingredient(SessionLocal, kitchen):
    with SessionLocal() as s:
        assert ingredients_for(s, kitchen.cheeseburger) == [
            (kitchen.beef, Decimal("0.2")),
            (kitchen.bun, Decimal("1")),
            (kitchen.cheese, Decimal("0.05")),
        ]
        assert ingredients_for(s, kitchen.water) == []


def test_ingredients_for_unknown_product(SessionLocal):
    with SessionLocal() as s:
        with pytest.raises(NotFound):
            ingredients_for(s, 4242)


def test_inactive_ingredients_are_left_out(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        s.get(Ingredient, kitchen.cheese).is_active = False
    with SessionLocal() as s:
        assert [i for i, _ in ingredients_for(s, kitchen.cheeseburger)] == [kitchen.beef, kitchen.bun]


def test_requirements_are_summed_per_ingredient(SessionLocal, kitchen):
    with SessionLocal() as s:
        needed = requirements_for_items(s, [(kitchen.burger, 2), (kitchen.cheeseburger, 3), (kitchen.burger, 1)])
    assert needed == {
        kitchen.beef: Decimal("1.2"),
        kitchen.bun: Decimal("6"),
        kitchen.cheese: Decimal("0.15"),
    }


def test_requirements_for_order_skip_cancelled_items(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        o = create_order(s, "dine_in", [(kitchen.burger, 1), (kitchen.salad, 2)])
        o.items[1].status = "cancelled"
        assert requirements_for_order(s, o) == {kitchen.beef: Decimal("0.2"), kitchen.bun: Decimal("1")}


def test_products_using(SessionLocal, kitchen):
    with SessionLocal() as s:
        assert products_using(s, [kitchen.beef]) == {kitchen.burger, kitchen.cheeseburger}
        assert products_using(s, [kitchen.lettuce, kitchen.cheese]) == {kitchen.salad, kitchen.cheeseburger}
        assert products_using(s, []) == set()


def test_recipe_line_is_upserted(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        set_recipe_line(s, kitchen.burger, kitchen.beef, "0.25")
        set_recipe_line(s, kitchen.burger, kitchen.beef, "0.3")
    with SessionLocal() as s:
        lines = s.query(ProductIngredient).filter_by(product_id=kitchen.burger, ingredient_id=kitchen.beef).all()
        assert len(lines) == 1
        assert lines[0].quantity_required == Decimal("0.3")


@pytest.mark.parametrize("qty", [0, "-1", "0.0001", "lots"])
def test_recipe_quantity_must_be_positive(SessionLocal, kitchen, qty):
    with SessionLocal() as s, s.begin():
        with pytest.raises(InvalidRecipe):
            set_recipe_line(s, kitchen.burger, kitchen.lettuce, qty)


def test_recipe_line_needs_known_rows(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        with pytest.raises(NotFound):
            set_recipe_line(s, 777, kitchen.beef, 1)
        with pytest.raises(NotFound):
            set_recipe_line(s, kitchen.burger, 777, 1)


def test_remove_recipe_line(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        assert remove_recipe_line(s, kitchen.burger, kitchen.bun) is True
        assert remove_recipe_line(s, kitchen.burger, kitchen.bun) is False
    with SessionLocal() as s:
        assert ingredients_for(s, kitchen.burger) == [(kitchen.beef, Decimal("0.2"))]


def test_register_product_rejects_duplicates(SessionLocal, kitchen):
    with SessionLocal() as s, s.begin():
        with pytest.raises(InvalidRecipe):
            register_product(s, "Burger")
