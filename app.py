# app.py
# Operator console (Streamlit) for orders, stock and menu availability.
# Run with: streamlit run app.py

import os
import logging
from decimal import Decimal
from typing import List, Optional

import bcrypt
import pandas as pd
import streamlit as st
from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from availability import check_stock, product_status
from db import (
    make_engine, make_sessionmaker, init_db,
    User, Ingredient, Product, Order,
    ORDER_TYPES, ROLES, UNITS, OP_RESTOCK, OP_SPOILAGE, OP_MANUAL_ADJUSTMENT,
)
from engine import OrderInventoryEngine
from errors import EngineError
from ledger import ledger_frame, low_stock, reconcile
from order_flow import ORDER_STATUSES, TRANSITIONS, CANCELLED, COMPLETED
from recipes import ingredients_for

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("app")

# -----------------------
# Cached resources: engine, sessionmaker and the order/inventory engine
# -----------------------
@st.cache_resource(show_spinner=False)
def get_engine_and_sessionmaker():
    url = os.getenv("DATABASE_URL")
    engine = init_db(make_engine(url))
    SessionLocal = make_sessionmaker(engine)
    return engine, SessionLocal

engine, SessionLocal = get_engine_and_sessionmaker()

@st.cache_resource(show_spinner=False)
def get_pos_engine():
    return OrderInventoryEngine(SessionLocal)

pos = get_pos_engine()

# Quick connection check
try:
    from sqlalchemy import text as _dbg_text
    with engine.connect() as conn:
        conn.execute(_dbg_text("SELECT 1"))
    st.sidebar.success("DB OK (connected)")
except Exception as e:
    st.sidebar.error(f"DB connection error: {e}")

# -----------------------
# UI utils
# -----------------------
def fmt_money(v) -> str:
    return f"$ {Decimal(str(v or 0)):,.2f}"

def toast_ok(msg: str):
    st.success(msg)

def toast_err(msg: str):
    st.error(msg)

def show_engine_error(e: EngineError):
    toast_err(e.message)
    if e.retryable:
        st.caption("Someone else changed the same data. Try again.")

def actor() -> Optional[str]:
    u = st.session_state.get("user")
    return u["username"] if u else None

def role() -> str:
    u = st.session_state.get("user")
    return u["role"] if u else ""

ROLE_PAGES = {
    "admin": ["Dashboard", "Orders", "Stock", "Menu & Availability", "Users"],
    "manager": ["Dashboard", "Orders", "Stock", "Menu & Availability"],
    "server": ["Dashboard", "Orders"],
    "counter": ["Dashboard", "Orders"],
    "kitchen": ["Dashboard", "Orders", "Stock"],
}

# -----------------------
# Cached stable lists
# -----------------------
@st.cache_data(show_spinner=False, ttl=30)
def cached_products():
    with SessionLocal() as s:
        q = s.query(Product).filter(Product.is_active == True).order_by(Product.name.asc()).all()
        return [(p.id, p.name, p.is_orderable) for p in q]

@st.cache_data(show_spinner=False, ttl=30)
def cached_ingredients():
    with SessionLocal() as s:
        q = s.query(Ingredient).filter(Ingredient.is_active == True).order_by(Ingredient.name.asc()).all()
        return [(i.id, i.name, i.unit) for i in q]

def clear_caches():
    cached_products.clear()
    cached_ingredients.clear()

# -----------------------
# Authentication
# -----------------------
def users_exist() -> bool:
    with SessionLocal() as s:
        return s.query(User).count() > 0

def hash_password(pwd: str) -> str:
    return bcrypt.hashpw(pwd.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

def create_first_admin():
    st.header("First run: create the administrator")
    with st.form("create_admin"):
        username = st.text_input("Username", placeholder="admin")
        name = st.text_input("Name")
        pwd = st.text_input("Password", type="password")
        pwd2 = st.text_input("Confirm password", type="password")
        submitted = st.form_submit_button("Create admin")
        if submitted:
            if not username or not pwd or pwd != pwd2:
                toast_err("Invalid data or passwords do not match.")
                return
            with SessionLocal() as s:
                if s.query(User).filter(User.username == username).first():
                    toast_err("User already exists.")
                    return
                s.add(User(username=username, name=name, password_hash=hash_password(pwd),
                           role="admin", is_active=True))
                s.commit()
            logger.info("first administrator %s created", username)
            toast_ok("Administrator created. Log in from the sidebar.")

def login_sidebar():
    st.sidebar.title("Access")
    if "user" in st.session_state:
        u = st.session_state["user"]
        st.sidebar.markdown(f"**Logged in as:** `{u['username']}` ({u['role']})")
        if st.sidebar.button("Log out"):
            st.session_state.pop("user", None)
            st.rerun()
        return

    with st.sidebar.form("login"):
        username = st.text_input("Username")
        pwd = st.text_input("Password", type="password")
        ok = st.form_submit_button("Log in")
        if ok:
            with SessionLocal() as s:
                u = s.query(User).filter(User.username == username, User.is_active == True).first()
                if not u or not bcrypt.checkpw(pwd.encode("utf-8"), (u.password_hash or "").encode("utf-8")):
                    logger.warning("failed login for %r", username)
                    toast_err("Invalid credentials.")
                    return
                st.session_state["user"] = {"id": u.id, "username": u.username, "role": u.role}
            toast_ok("Logged in.")
            st.rerun()

# -----------------------
# Pages: Dashboard
# -----------------------
def page_dashboard():
    st.subheader("Dashboard")
    with SessionLocal() as s:
        counts = dict(s.execute(select(Order.status, func.count(Order.id)).group_by(Order.status)).all())
        revenue = s.execute(
            select(func.coalesce(func.sum(Order.total_amount), 0)).where(Order.status == COMPLETED)
        ).scalar_one()
        short = low_stock(s)
        unavailable = s.query(Product).filter(Product.is_active == True, Product.is_available == False) \
            .order_by(Product.name.asc()).all()
        unavailable_names = [p.name for p in unavailable]
        short_rows = [{"ingredient": i.name, "stock": i.current_stock, "minimum": i.minimum_stock, "unit": i.unit}
                      for i in short]

    open_count = sum(v for k, v in counts.items() if k not in (COMPLETED, CANCELLED))
    c = st.columns(4)
    c[0].metric("Orders (total)", sum(counts.values()))
    c[1].metric("Open", open_count)
    c[2].metric("Cancelled", counts.get(CANCELLED, 0))
    c[3].metric("Revenue (completed)", fmt_money(revenue))

    st.markdown("#### Orders by status")
    st.dataframe(pd.DataFrame([{"status": k, "orders": counts.get(k, 0)} for k in ORDER_STATUSES]),
                 hide_index=True, use_container_width=True)
    st.markdown("#### Low stock")
    if short_rows:
        st.dataframe(pd.DataFrame(short_rows), hide_index=True, use_container_width=True)
    else:
        st.caption("Nothing below its minimum.")
    if unavailable_names:
        st.warning("Unavailable: " + ", ".join(unavailable_names))

# -----------------------
# Pages: Orders
# -----------------------
def order_new_form():
    pr_opts = cached_products()
    if not pr_opts:
        st.info("Register products first.")
        return
    with st.form("order_new"):
        cols = st.columns(3)
        order_type = cols[0].selectbox("Type", ORDER_TYPES)
        table = cols[1].text_input("Table")
        customer = cols[2].text_input("Customer")
        notes = st.text_area("Notes")
        rows = st.number_input("Lines", min_value=1, max_value=10, value=1)
        entries = []
        for i in range(int(rows)):
            lc = st.columns((3, 1))
            prod = lc[0].selectbox(f"Product #{i+1}", pr_opts, key=f"prod_{i}",
                                   format_func=lambda t: t[1] + ("" if t[2] else " (unavailable)"))
            qty = lc[1].number_input(f"Qty #{i+1}", min_value=1, step=1, value=1, key=f"qty_{i}")
            entries.append((prod[0], int(qty)))
        confirm_now = st.checkbox("Confirm immediately")
        submit = st.form_submit_button("Create order")
    if not submit:
        return

    with SessionLocal() as s:
        check = check_stock(s, entries)
    if not check.valid:
        toast_err("Not enough stock: " + ", ".join(
            f"{sh.name} (has {sh.has} {sh.unit}, needs {sh.needs})" for sh in check.shortages))
        return
    try:
        o = pos.create_order(order_type, entries, actor=actor(), table_number=table or None,
                             customer_name=customer or None, notes=notes or None)
        if confirm_now:
            o = pos.confirm_order(o.id, actor=actor())
    except EngineError as e:
        show_engine_error(e)
        return
    clear_caches()
    toast_ok(f"Order {o.order_number} {o.status}, total {fmt_money(o.total_amount)}.")

def order_card(o: Order, names: dict):
    with st.container(border=True):
        items_txt = ", ".join(f"{it.quantity}x {names.get(it.product_id, '??')}" for it in o.items)
        where = f"table {o.table_number}" if o.table_number else (o.customer_name or o.order_type)
        st.markdown(f"**{o.order_number}** ({where})")
        st.caption(f"Items: {items_txt}")
        st.caption(f"Total: {fmt_money(o.total_amount)}")

        nexts = sorted(t for t in TRANSITIONS[o.status] if t != CANCELLED)
        cols = st.columns(2)
        if nexts and cols[0].button(f"→ {nexts[0]}", key=f"adv_{o.id}"):
            try:
                pos.advance_order(o.id, nexts[0], actor=actor())
            except EngineError as e:
                show_engine_error(e)
                return
            clear_caches()
            st.rerun()
        if CANCELLED in TRANSITIONS[o.status]:
            reason = cols[1].text_input("Cancel reason", key=f"why_{o.id}")
            if cols[1].button("Cancel order", key=f"cancel_{o.id}"):
                try:
                    pos.cancel_order(o.id, actor=actor(), reason=reason or None)
                except EngineError as e:
                    show_engine_error(e)
                    return
                clear_caches()
                st.rerun()

def page_orders():
    st.subheader("Orders")
    with st.expander("New order", expanded=False):
        order_new_form()

    status_filter = st.multiselect("Show statuses", ORDER_STATUSES,
                                   default=[x for x in ORDER_STATUSES if x not in (COMPLETED, CANCELLED)])
    with SessionLocal() as s:
        names = dict(s.execute(select(Product.id, Product.name)).all())
        orders = s.query(Order).options(selectinload(Order.items)) \
            .filter(Order.status.in_(status_filter)) \
            .order_by(Order.created_at.asc()).limit(60).all()
    if not orders:
        st.caption("No orders.")
    for o in orders:
        order_card(o, names)

# -----------------------
# Pages: Stock
# -----------------------
def page_stock():
    st.subheader("Stock")
    ing_opts = cached_ingredients()

    if role() in ("admin", "manager"):
        with st.expander("Register ingredient"):
            with st.form("ing_new"):
                cols = st.columns(3)
                name = cols[0].text_input("Name")
                unit = cols[1].selectbox("Unit", UNITS)
                opening = cols[2].text_input("Opening stock", value="0")
                cols = st.columns(3)
                minimum = cols[0].text_input("Minimum", value="0")
                cost = cols[1].text_input("Unit cost", value="0")
                supplier = cols[2].text_input("Supplier")
                if st.form_submit_button("Save"):
                    try:
                        pos.register_ingredient(name, actor=actor(), unit=unit, opening_stock=opening,
                                                minimum_stock=minimum, unit_cost=cost,
                                                supplier=supplier or None)
                    except EngineError as e:
                        show_engine_error(e)
                    else:
                        clear_caches()
                        toast_ok(f"{name} registered.")

    if ing_opts:
        with st.form("adjust"):
            st.markdown("**Adjust stock**")
            cols = st.columns((2, 2, 1))
            ing = cols[0].selectbox("Ingredient", ing_opts, format_func=lambda t: f"{t[1]} ({t[2]})")
            op = cols[1].selectbox("Operation", [OP_RESTOCK, OP_SPOILAGE, OP_MANUAL_ADJUSTMENT])
            qty = cols[2].text_input("Quantity (signed)", value="1")
            reason = st.text_input("Reason")
            if st.form_submit_button("Post"):
                try:
                    entry = pos.adjust_stock(ing[0], qty, op, actor=actor(), reason=reason or None)
                except EngineError as e:
                    show_engine_error(e)
                else:
                    clear_caches()
                    toast_ok(f"{ing[1]}: {entry.previous_stock} → {entry.new_stock}")

    with SessionLocal() as s:
        stock_df = pd.DataFrame([{
            "ingredient": i.name, "unit": i.unit, "stock": i.current_stock,
            "minimum": i.minimum_stock, "low": i.current_stock < i.minimum_stock,
        } for i in s.query(Ingredient).filter(Ingredient.is_active == True).order_by(Ingredient.name.asc())])
    st.markdown("#### Current stock")
    st.dataframe(stock_df, hide_index=True, use_container_width=True)

    st.markdown("#### Ledger")
    pick = st.selectbox("Ingredient", [None] + ing_opts, format_func=lambda t: "All" if t is None else t[1])
    order_no = st.text_input("Order number (optional)")
    with SessionLocal() as s:
        order_id = None
        if order_no:
            order_id = s.execute(select(Order.id).where(Order.order_number == order_no.strip())).scalar()
            if order_id is None:
                st.caption("Order not found, showing all entries.")
        st.dataframe(ledger_frame(s, ingredient_id=pick[0] if pick else None, order_id=order_id),
                     hide_index=True, use_container_width=True)

    st.markdown("#### Reconciliation")
    if st.button("Replay ledger"):
        with SessionLocal() as s:
            df = reconcile(s)
        bad = df[~df["consistent"]]
        if bad.empty:
            toast_ok("Stored stock matches the ledger for every ingredient.")
        else:
            toast_err(f"{len(bad)} ingredient(s) drifted from their ledger.")
        st.dataframe(df, hide_index=True, use_container_width=True)

# -----------------------
# Pages: Menu & Availability
# -----------------------
def page_menu():
    st.subheader("Menu & Availability")
    ing_opts = cached_ingredients()
    with st.expander("Register product"):
        with st.form("prod_new"):
            cols = st.columns(2)
            name = cols[0].text_input("Name")
            price = cols[1].text_input("Price", value="0.00")
            if st.form_submit_button("Save"):
                try:
                    pos.register_product(name, price)
                except EngineError as e:
                    show_engine_error(e)
                else:
                    clear_caches()
                    toast_ok(f"{name} registered.")

    pr_opts = cached_products()
    if not pr_opts:
        return
    prod = st.selectbox("Product", pr_opts, format_func=lambda t: t[1])
    with SessionLocal() as s:
        lines = ingredients_for(s, prod[0])
        pstat = product_status(s, prod[0])
        p = s.get(Product, prod[0])
        override = p.availability_override
    ing_names = {i[0]: (i[1], i[2]) for i in ing_opts}

    c = st.columns(3)
    c[0].metric("Status", pstat.status)
    c[1].metric("Derived flag", "available" if pstat.available else "unavailable")
    c[2].metric("Override", "none" if override is None else ("on" if override else "off"))
    if pstat.missing_ingredients:
        st.error("Out: " + ", ".join(pstat.missing_ingredients))
    if pstat.limiting_ingredients:
        st.warning("Low: " + ", ".join(f"{x['name']} ({x['current_stock']})" for x in pstat.limiting_ingredients))

    st.markdown("**Recipe**")
    st.dataframe(pd.DataFrame([{
        "ingredient": ing_names.get(i, ("?", ""))[0], "per unit": q, "unit": ing_names.get(i, ("?", ""))[1],
    } for i, q in lines]), hide_index=True, use_container_width=True)

    if role() in ("admin", "manager"):
        with st.form("recipe_line"):
            cols = st.columns((3, 1))
            ing = cols[0].selectbox("Ingredient", ing_opts, format_func=lambda t: f"{t[1]} ({t[2]})")
            qty = cols[1].text_input("Per unit", value="1")
            cols = st.columns(2)
            save = cols[0].form_submit_button("Set line")
            drop = cols[1].form_submit_button("Remove line")
            if save or drop:
                try:
                    if save:
                        pos.set_recipe_line(prod[0], ing[0], qty)
                    elif not pos.remove_recipe_line(prod[0], ing[0]):
                        st.caption("No such line.")
                except EngineError as e:
                    show_engine_error(e)
                else:
                    clear_caches()
                    st.rerun()

        cols = st.columns(4)
        for col, (label, value) in zip(cols[:3], [("Force on", True), ("Force off", False), ("Clear override", None)]):
            if col.button(label):
                try:
                    pos.set_override(prod[0], value, actor=actor())
                except EngineError as e:
                    show_engine_error(e)
                else:
                    clear_caches()
                    st.rerun()
        if cols[3].button("Resync all"):
            changes = pos.sync_availability()
            clear_caches()
            toast_ok(f"{len(changes)} product(s) changed.")

# -----------------------
# Pages: Users
# -----------------------
def page_users():
    st.subheader("Users")
    with st.form("user_new"):
        cols = st.columns(3)
        username = cols[0].text_input("Username")
        name = cols[1].text_input("Name")
        r = cols[2].selectbox("Role", ROLES)
        pwd = st.text_input("Password", type="password")
        if st.form_submit_button("Create"):
            if not username or not pwd:
                toast_err("Username and password are required.")
            else:
                with SessionLocal() as s:
                    if s.query(User).filter(User.username == username).first():
                        toast_err("User already exists.")
                    else:
                        s.add(User(username=username, name=name, password_hash=hash_password(pwd),
                                   role=r, is_active=True))
                        s.commit()
                        logger.info("user %s (%s) created by %s", username, r, actor())
                        toast_ok("User created.")

    with SessionLocal() as s:
        users = s.query(User).order_by(User.username.asc()).all()
        st.dataframe(pd.DataFrame([{
            "username": u.username, "name": u.name, "role": u.role, "active": u.is_active,
        } for u in users]), hide_index=True, use_container_width=True)
        others = [u for u in users if u.username != actor()]
        if others:
            u_sel = st.selectbox("Toggle active", others, format_func=lambda u: u.username)
            if st.button("Toggle"):
                u_sel.is_active = not u_sel.is_active
                s.commit()
                st.rerun()

# -----------------------
# Router
# -----------------------
def app_header():
    st.title("🍽️ Restaurant POS: orders & stock")

def run_router():
    app_header()
    if not users_exist():
        create_first_admin()
        login_sidebar()
        return
    login_sidebar()
    if "user" not in st.session_state:
        st.info("Log in to continue.")
        return
    pages: List[str] = ROLE_PAGES.get(role(), ["Dashboard"])
    choice = st.sidebar.selectbox("Pages", options=pages)
    if choice == "Dashboard":
        page_dashboard()
    elif choice == "Orders":
        page_orders()
    elif choice == "Stock":
        page_stock()
    elif choice == "Menu & Availability":
        page_menu()
    elif choice == "Users":
        page_users()
    else:
        st.info("Page unavailable for your role.")

if __name__ == "__main__":
    run_router()
