"""Tests for admin reporting and store seeding."""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select, text

from commerce_ledger.errors import OrderNotFound
from commerce_ledger.models import LineItem
from commerce_ledger.reporting import AdminReporting
from commerce_ledger.services import PointsAccount
from commerce_ledger.store import SAMPLE_PRODUCTS, Store
from commerce_ledger.tables import Product, User


def test_stats_count_revenue_of_paid_orders_only(store, engine, users):
    reporting = AdminReporting(store)
    alice = users["alice"]
    paid = engine.create_order(alice, [LineItem("A", Decimal("12.50"), 2)])
    engine.create_order(alice, [LineItem("B", Decimal("7.00"), 1)])
    engine.pay(paid.id, alice)

    stats = reporting.stats()

    assert stats.user_count == 3
    assert stats.order_count == 2
    assert stats.total_revenue == Decimal("25.00")
    assert stats.today_orders == 2
    assert stats.today_revenue == Decimal("32.00")


def test_stats_for_another_day_and_empty_store(store):
    stats = AdminReporting(store).stats(today=date(2000, 1, 1))

    assert stats.order_count == 0
    assert stats.total_revenue == Decimal("0.00")
    assert stats.today_orders == 0
    assert stats.today_revenue == Decimal("0.00")


def test_order_listing_and_detail(store, engine, users):
    reporting = AdminReporting(store)
    order = engine.create_order(users["bob"], [LineItem("A", Decimal("3.00"), 1)])

    rows = reporting.list_orders()
    assert [(r.order.id, r.username) for r in rows] == [(order.id, "bob")]

    detail = reporting.order_detail(order.id)
    assert detail.username == "bob"
    assert [i.product_name for i in detail.order.items] == ["A"]

    with pytest.raises(OrderNotFound):
        reporting.order_detail("#CPMWL-missing")


def test_seed_defaults_keeps_admin_on_the_ledger(store, count_rows):
    products_before = count_rows(Product)
    store.seed_defaults(admin_password_hash="pw-hash")
    store.seed_defaults(admin_password_hash="pw-hash")

    reporting = AdminReporting(store)
    usernames = [u.username for u in reporting.list_users()]
    assert store.policy.admin_username not in usernames
    assert sorted(usernames) == ["alice", "bob", "carol"]
    assert count_rows(Product) == products_before

    with store.transaction() as session:
        admin_id = session.scalar(select(User.id).where(User.username == store.policy.admin_username))
    assert PointsAccount(store).reconcile(admin_id) == (9999, 9999)


def test_seed_defaults_adds_sample_products_to_empty_catalog(tmp_path):
    store = Store.from_url(f"sqlite:///{tmp_path / 'empty.db'}")
    store.create_schema()
    store.seed_defaults(admin_password_hash="pw-hash")

    products = AdminReporting(store).list_products()
    assert len(products) == len(SAMPLE_PRODUCTS)
    assert products[-1].price == Decimal("99.99")
    store.dispose()


def test_money_is_stored_as_exact_cents(store, engine, users):
    alice = users["alice"]
    for price in ("0.10", "0.20"):
        order = engine.create_order(alice, [LineItem("Gum", Decimal(price), 1)])
        engine.pay(order.id, alice)

    with store.transaction() as session:
        stored = session.execute(text("select typeof(total_amount), total_amount from orders order by total_amount")).all()
    assert [tuple(row) for row in stored] == [("integer", 10), ("integer", 20)]

    assert AdminReporting(store).stats().total_revenue == Decimal("0.30")
    detail = AdminReporting(store).order_detail(order.id)
    assert detail.order.final_amount == Decimal("0.20")
    assert detail.order.items[0].product_price == Decimal("0.20")
