from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import update

from db import Ingredient, IngredientHistory
from errors import InsufficientStock, InvalidAdjustment, LedgerCorrupt, LedgerImmutable, NotFound
from ledger import (
    LEDGER_COLUMNS, apply_delta, current_stock, entries_for, ledger_frame, low_stock, reconcile,
    register_ingredient, replay_stock, to_qty,
)


@pytest.fixture()
def flour(SessionLocal) -> int:
    with SessionLocal() as s, s.begin():
        ing = register_ingredient(s, "Flour", unit="kg", opening_stock="12.5", minimum_stock=2, actor="mgr")
        return ing.id


@pytest.mark.parametrize("raw,expected", [
    (1, Decimal("1.000")),
    ("0.25", Decimal("0.250")),
    ("-3.125", Decimal("-3.125")),
    (Decimal("7.1"), Decimal("7.100")),
    (0.5, Decimal("0.500")),
])
def test_to_qty_normalises_scale(raw, expected):
    assert to_qty(raw) == expected
    assert to_qty(raw).as_tuple().exponent == -3


@pytest.mark.parametrize("raw", ["0.0005", "abc", None, "NaN", "inf", "1e30", "1000000000", "-1e9"])
def test_to_qty_rejects(raw):
    with pytest.raises(InvalidAdjustment):
        to_qty(raw)


def test_opening_stock_enters_through_the_ledger(SessionLocal, flour):
    with SessionLocal() as s:
        entries = entries_for(s, ingredient_id=flour)
        assert len(entries) == 1
        e = entries[0]
        assert (e.operation, e.quantity, e.previous_stock, e.new_stock) == (
            "restock", Decimal("12.5"), Decimal("0"), Decimal("12.5"),
        )
        assert e.reason == "Opening stock"
        assert e.actor == "mgr"
        assert current_stock(s, flour) == Decimal("12.500")


def test_apply_delta_records_before_and_after(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        e = apply_delta(s, flour, "-2.75", "spoilage", actor="chef", reason="damp sack")
        assert e.previous_stock == Decimal("12.500")
        assert e.new_stock == Decimal("9.750")
        assert e.quantity == Decimal("-2.750")
    with SessionLocal() as s:
        ing = s.get(Ingredient, flour)
        assert ing.current_stock == Decimal("9.75")
        assert ing.stock_version == 2


def test_restock_stamps_last_restocked_at(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        apply_delta(s, flour, 5, "restock")
    with SessionLocal() as s:
        assert s.get(Ingredient, flour).last_restocked_at is not None


def test_apply_delta_refreshes_loaded_objects(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        ing = s.get(Ingredient, flour)
        assert ing.current_stock == Decimal("12.5")
        apply_delta(s, flour, 1, "restock")
        assert ing.current_stock == Decimal("13.5")


def test_negative_result_is_rejected_and_nothing_written(SessionLocal, flour):
    with SessionLocal() as s:
        with pytest.raises(InsufficientStock) as info:
            with s.begin():
                apply_delta(s, flour, -13, "order_consumption", order_id=None)
    assert info.value.available == Decimal("12.5")
    assert info.value.requested == Decimal("13")
    assert info.value.ingredient_name == "Flour"
    with SessionLocal() as s:
        assert current_stock(s, flour) == Decimal("12.5")
        assert len(entries_for(s, ingredient_id=flour)) == 1


def test_exact_depletion_is_allowed(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        e = apply_delta(s, flour, "-12.5", "manual_adjustment")
    assert e.new_stock == Decimal("0")


def test_stock_cannot_grow_past_column_range(SessionLocal, flour):
    with SessionLocal() as s:
        with pytest.raises(InvalidAdjustment):
            with s.begin():
                apply_delta(s, flour, "999999999.999", "restock")
    with SessionLocal() as s:
        assert current_stock(s, flour) == Decimal("12.5")
        assert len(entries_for(s, ingredient_id=flour)) == 1


@pytest.mark.parametrize("qty,operation", [(0, "restock"), (1, "theft"), ("1.0001", "restock")])
def test_invalid_deltas(SessionLocal, flour, qty, operation):
    with SessionLocal() as s, s.begin():
        with pytest.raises(InvalidAdjustment):
            apply_delta(s, flour, qty, operation)


def test_unknown_ingredient(SessionLocal):
    with SessionLocal() as s, s.begin():
        with pytest.raises(NotFound):
            apply_delta(s, 12345, 1, "restock")
    with SessionLocal() as s:
        with pytest.raises(NotFound):
            current_stock(s, 12345)


def test_register_ingredient_validation(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        with pytest.raises(InvalidAdjustment):
            register_ingredient(s, "Flour")
    with SessionLocal() as s, s.begin():
        with pytest.raises(InvalidAdjustment):
            register_ingredient(s, "Salt", unit="handful")
    with SessionLocal() as s, s.begin():
        with pytest.raises(InvalidAdjustment):
            register_ingredient(s, "Sugar", opening_stock=-1)


def test_entries_cannot_be_modified(SessionLocal, flour):
    with SessionLocal() as s:
        with pytest.raises(LedgerImmutable):
            with s.begin():
                e = entries_for(s, ingredient_id=flour)[0]
                e.quantity = Decimal("100")


def test_entries_cannot_be_deleted(SessionLocal, flour):
    with SessionLocal() as s:
        with pytest.raises(LedgerImmutable):
            with s.begin():
                s.delete(entries_for(s, ingredient_id=flour)[0])
    with SessionLocal() as s:
        assert len(entries_for(s, ingredient_id=flour)) == 1


def test_replay_matches_stored_stock(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        for qty, op in [("-1.2", "spoilage"), ("4", "restock"), ("-0.3", "manual_adjustment")]:
            apply_delta(s, flour, qty, op)
    with SessionLocal() as s:
        assert replay_stock(s, flour) == current_stock(s, flour) == Decimal("15")


def test_entries_for_filters(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        apply_delta(s, flour, -1, "spoilage")
        apply_delta(s, flour, 2, "restock")
    with SessionLocal() as s:
        assert [e.operation for e in entries_for(s, ingredient_id=flour)] == ["restock", "spoilage", "restock"]
        assert len(entries_for(s, operation="spoilage")) == 1
        assert entries_for(s, order_id=999) == []


def test_low_stock_lists_ingredients_below_minimum(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        apply_delta(s, flour, -11, "spoilage")
    with SessionLocal() as s:
        assert [i.name for i in low_stock(s)] == ["Flour"]
        assert low_stock(s, []) == []


def test_ledger_frame(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        apply_delta(s, flour, -2, "spoilage", actor="chef")
    with SessionLocal() as s:
        df = ledger_frame(s, ingredient_id=flour)
    assert list(df.columns) == LEDGER_COLUMNS
    assert len(df) == 2
    assert df.iloc[-1]["ingredient"] == "Flour"
    assert df.iloc[-1]["new_stock"] == Decimal("10.5")


def test_reconcile_reports_consistent_store(SessionLocal, flour):
    with SessionLocal() as s:
        df = reconcile(s)
    row = df[df["ingredient_id"] == flour].iloc[0]
    assert bool(row["consistent"]) is True
    assert row["drift"] == Decimal("0")


def test_reconcile_flags_out_of_band_writes(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        s.execute(update(Ingredient).where(Ingredient.id == flour).values(current_stock=Decimal("20")))
    with SessionLocal() as s:
        df = reconcile(s)
    row = df[df["ingredient_id"] == flour].iloc[0]
    assert bool(row["consistent"]) is False
    assert row["drift"] == Decimal("7.5")


def test_broken_chain_is_reported(SessionLocal, flour):
    with SessionLocal() as s, s.begin():
        s.add(IngredientHistory(ingredient_id=flour, operation="restock", quantity=Decimal("1"),
                                previous_stock=Decimal("99"), new_stock=Decimal("100")))
    with SessionLocal() as s:
        with pytest.raises(LedgerCorrupt):
            replay_stock(s, flour)
        row = reconcile(s).iloc[0]
    assert bool(row["consistent"]) is False
