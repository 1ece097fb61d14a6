# db.py
# ORM models, engine helpers and idempotent migrations for the order/inventory engine

from __future__ import annotations
import os
import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    create_engine, event, Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey,
    Text, CheckConstraint, UniqueConstraint, Index, text, inspect
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session

from errors import LedgerImmutable

# ---------------------------------------------------------------------
# Base / Constants
# ---------------------------------------------------------------------
Base = declarative_base()

QTY = Numeric(12, 3)
MONEY = Numeric(12, 2)

UNITS = ("kg", "g", "l", "ml", "pcs", "pack", "box")
ORDER_TYPES = ("dine_in", "takeout", "delivery")
ROLES = ("admin", "manager", "server", "counter", "kitchen")

OP_RESTOCK = "restock"
OP_ORDER_CONSUMPTION = "order_consumption"
OP_ORDER_CANCELLATION = "order_cancellation"
OP_MANUAL_ADJUSTMENT = "manual_adjustment"
OP_SPOILAGE = "spoilage"
LEDGER_OPERATIONS = (
    OP_RESTOCK, OP_ORDER_CONSUMPTION, OP_ORDER_CANCELLATION, OP_MANUAL_ADJUSTMENT, OP_SPOILAGE,
)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)

# ---------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------
def make_engine(database_url: Optional[str] = None):
    url = database_url or os.getenv("DATABASE_URL") or "sqlite:///restaurant.db"
    kw = dict(echo=False, future=True, pool_pre_ping=True)
    sslmode = os.getenv("DB_SSLMODE")
    if url.startswith("postgres") and sslmode and "sslmode=" not in url:
        url = url + ("&" if "?" in url else "?") + f"sslmode={sslmode}"
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kw["connect_args"] = {
            "check_same_thread": False,
            "timeout": float(os.getenv("POS_SQLITE_TIMEOUT", "15")),
        }
    elif os.getenv("POS_ISOLATION_LEVEL"):
        kw["isolation_level"] = os.getenv("POS_ISOLATION_LEVEL")
    engine = create_engine(url, **kw)
    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            # pysqlite would otherwise defer BEGIN until the first write
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            # one writer at a time for the whole unit of work
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    return engine


def make_sessionmaker(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def expire_cached(session: Session, model, ident, attrs):
    """Expires attributes of an already-loaded object after a Core UPDATE bypassed the ORM."""
    obj = session.identity_map.get(session.identity_key(model, ident))
    if obj is not None:
        session.expire(obj, attrs)

# ---------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------
class Config(Base):
    __tablename__ = "config"
    id = Column(Integer, primary_key=True)
    conflict_retries = Column(Integer, default=3, nullable=False)
    tax_rate = Column(Numeric(6, 4), default=Decimal("0"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class User(Base):
    __tablename__ = "user"
    id = Column(Integer, primary_key=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(120))
    password_hash = Column(String(200), nullable=False)
    role = Column(String(20), default="server", nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class Ingredient(Base):
    __tablename__ = "ingredient"
    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_ingredient_stock_non_negative"),
    )
    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    unit = Column(String(20), default="pcs", nullable=False)
    # written only by ledger.apply_delta
    current_stock = Column(QTY, default=Decimal("0"), nullable=False)
    stock_version = Column(Integer, default=0, nullable=False)
    minimum_stock = Column(QTY, default=Decimal("0"), nullable=False)
    maximum_stock = Column(QTY, default=Decimal("0"), nullable=False)
    unit_cost = Column(MONEY, default=Decimal("0"), nullable=False)
    supplier = Column(String(200))
    is_active = Column(Boolean, default=True, nullable=False)
    last_restocked_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    recipe_lines = relationship("ProductIngredient", back_populates="ingredient", cascade="all, delete-orphan")


class Product(Base):
    __tablename__ = "product"
    id = Column(Integer, primary_key=True)
    name = Column(String(120), unique=True, nullable=False)
    price = Column(MONEY, default=Decimal("0"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    # derived from recipe stock; written only by availability.py
    is_available = Column(Boolean, default=True, nullable=False)
    # None = follow the derived flag
    availability_override = Column(Boolean)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    recipe_lines = relationship("ProductIngredient", back_populates="product", cascade="all, delete-orphan")

    @property
    def is_orderable(self) -> bool:
        if self.availability_override is not None:
            return bool(self.availability_override) and bool(self.is_active)
        return bool(self.is_available) and bool(self.is_active)


class ProductIngredient(Base):
    __tablename__ = "product_ingredient"
    __table_args__ = (
        UniqueConstraint("product_id", "ingredient_id", name="uq_product_ingredient"),
        CheckConstraint("quantity_required > 0", name="ck_recipe_quantity_positive"),
    )
    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("product.id", ondelete="CASCADE"), nullable=False, index=True)
    ingredient_id = Column(Integer, ForeignKey("ingredient.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity_required = Column(QTY, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="recipe_lines")
    ingredient = relationship("Ingredient", back_populates="recipe_lines")


class Order(Base):
    __tablename__ = "order"
    id = Column(Integer, primary_key=True)
    order_number = Column(String(40), unique=True)
    order_type = Column(String(20), default="dine_in", nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)
    table_number = Column(String(20))
    customer_name = Column(String(120))
    subtotal = Column(MONEY, default=Decimal("0"), nullable=False)
    tax_amount = Column(MONEY, default=Decimal("0"), nullable=False)
    discount_amount = Column(MONEY, default=Decimal("0"), nullable=False)
    total_amount = Column(MONEY, default=Decimal("0"), nullable=False)
    notes = Column(Text)
    created_by = Column(String(50))
    confirmed_at = Column(DateTime)
    served_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancel_reason = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan",
                         order_by="OrderItem.id")
    status_history = relationship("OrderStatusHistory", back_populates="order",
                                  cascade="all, delete-orphan", order_by="OrderStatusHistory.id")


class OrderItem(Base):
    __tablename__ = "order_item"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
    )
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("order.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("product.id", ondelete="RESTRICT"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(MONEY, nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("order.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_status = Column(String(20))
    new_status = Column(String(20), nullable=False)
    changed_by = Column(String(50))
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="status_history")


class IngredientHistory(Base):
    __tablename__ = "ingredient_history"
    __table_args__ = (
        Index("idx_ingredient_history_chain", "ingredient_id", "created_at", "id"),
    )
    id = Column(Integer, primary_key=True)
    ingredient_id = Column(Integer, ForeignKey("ingredient.id", ondelete="RESTRICT"), nullable=False)
    order_id = Column(Integer, ForeignKey("order.id", ondelete="SET NULL"), index=True)
    operation = Column(String(30), nullable=False)
    quantity = Column(QTY, nullable=False)  # signed
    previous_stock = Column(QTY, nullable=False)
    new_stock = Column(QTY, nullable=False)
    actor = Column(String(50))
    reason = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    ingredient = relationship("Ingredient")
    order = relationship("Order")


@event.listens_for(IngredientHistory, "before_update")
def _ledger_no_update(mapper, connection, target):
    raise LedgerImmutable(f"ledger entry #{target.id} cannot be modified")


@event.listens_for(IngredientHistory, "before_delete")
def _ledger_no_delete(mapper, connection, target):
    raise LedgerImmutable(f"ledger entry #{target.id} cannot be deleted")

# ---------------------------------------------------------------------
# Config default
# ---------------------------------------------------------------------
def get_or_create_default_config(session: Session) -> Config:
    cfg = session.query(Config).first()
    if not cfg:
        cfg = Config()
        session.add(cfg)
        session.commit()
    if cfg.conflict_retries is None or cfg.conflict_retries < 0:
        cfg.conflict_retries = 3
        session.commit()
    return cfg

# ---------------------------------------------------------------------
# Idempotent migrations
# ---------------------------------------------------------------------
def table_exists(bind, table_name: str) -> bool:
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def column_exists(bind, table_name: str, column_name: str) -> bool:
    insp = inspect(bind)
    cols = insp.get_columns(table_name)
    return any(c.get("name") == column_name for c in cols)


def run_safe_migrations(engine):
    """Adds columns introduced after the first schema, for Postgres/SQLite."""
    with engine.begin() as conn:
        # ---------- INGREDIENT_HISTORY.order_id ----------
        if table_exists(conn, "ingredient_history"):
            if not column_exists(conn, "ingredient_history", "order_id"):
                conn.execute(text('ALTER TABLE "ingredient_history" ADD COLUMN order_id INTEGER REFERENCES "order"(id) ON DELETE SET NULL'))
                conn.execute(text('CREATE INDEX IF NOT EXISTS idx_ingredient_history_order ON "ingredient_history"(order_id)'))

        # ---------- INGREDIENT.stock_version ----------
        if table_exists(conn, "ingredient"):
            if not column_exists(conn, "ingredient", "stock_version"):
                conn.execute(text('ALTER TABLE "ingredient" ADD COLUMN stock_version INTEGER DEFAULT 0 NOT NULL'))

        # ---------- PRODUCT.availability_override ----------
        if table_exists(conn, "product"):
            if not column_exists(conn, "product", "availability_override"):
                conn.execute(text('ALTER TABLE "product" ADD COLUMN availability_override BOOLEAN'))

        # ---------- ORDER timestamps ----------
        if table_exists(conn, "order"):
            for col in ("confirmed_at", "cancelled_at"):
                if not column_exists(conn, "order", col):
                    conn.execute(text(f'ALTER TABLE "order" ADD COLUMN {col} TIMESTAMP'))
            if not column_exists(conn, "order", "cancel_reason"):
                conn.execute(text('ALTER TABLE "order" ADD COLUMN cancel_reason TEXT'))

# ---------------------------------------------------------------------
# DB initialisation
# ---------------------------------------------------------------------
def init_db(engine):
    Base.metadata.create_all(engine)
    run_safe_migrations(engine)
    SessionLocal = make_sessionmaker(engine)
    with SessionLocal() as session:
        get_or_create_default_config(session)
    return engine
