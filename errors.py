# errors.py
# Engine error kinds and translation of store failures

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import DBAPIError, OperationalError


class EngineError(Exception):
    """Base class for every failure the engine surfaces to its callers."""
    code = "engine_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class InvalidTransition(EngineError):
    code = "invalid_transition"

    def __init__(self, current: Optional[str], target: str, order_id: Optional[int] = None):
        self.current = current
        self.target = target
        self.order_id = order_id
        where = f"order #{order_id}: " if order_id is not None else ""
        super().__init__(f"{where}cannot move from {current!r} to {target!r}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(current=self.current, target=self.target, order_id=self.order_id)
        return d


class InsufficientStock(EngineError):
    code = "insufficient_stock"

    def __init__(self, ingredient_id: int, ingredient_name: Optional[str],
                 available: Decimal, requested: Decimal):
        self.ingredient_id = ingredient_id
        self.ingredient_name = ingredient_name
        self.available = available
        self.requested = requested
        label = ingredient_name or f"#{ingredient_id}"
        super().__init__(f"insufficient stock for {label}: need {requested}, have {available}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(
            ingredient_id=self.ingredient_id,
            ingredient_name=self.ingredient_name,
            available=str(self.available),
            requested=str(self.requested),
        )
        return d


class ConcurrencyConflict(EngineError):
    code = "concurrency_conflict"
    retryable = True


class NotFound(EngineError):
    code = "not_found"

    def __init__(self, kind: str, ident: Any):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} {ident!r} not found")


class InvalidAdjustment(EngineError):
    code = "invalid_adjustment"


class InvalidOrder(EngineError):
    code = "invalid_order"


class InvalidRecipe(EngineError):
    code = "invalid_recipe"


class LedgerImmutable(EngineError):
    code = "ledger_immutable"


class LedgerCorrupt(EngineError):
    code = "ledger_corrupt"


# Postgres: serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


def translate_db_error(exc: Exception) -> Optional[ConcurrencyConflict]:
    """Returns a ConcurrencyConflict for store-detected conflicts, None for anything else."""
    if not isinstance(exc, DBAPIError):
        return None
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return ConcurrencyConflict(f"store conflict ({sqlstate}): {orig}")
    if isinstance(exc, OperationalError):
        msg = str(orig or exc).lower()
        if "database is locked" in msg or "deadlock" in msg or "could not serialize" in msg:
            return ConcurrencyConflict(f"store conflict: {orig or exc}")
    return None
