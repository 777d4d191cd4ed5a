"""Pytest fixtures: a fresh file-backed SQLite ledger per test."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from commerce_ledger.orders import OrderEngine
from commerce_ledger.services import AccountService, CouponIssuer, PointsAccount
from commerce_ledger.store import Store


class SequenceIds:
    """Hands out the given ids in order; handy for forcing collisions."""

    def __init__(self, *ids: str):
        self.ids = list(ids)
        self.calls = 0

    def __call__(self) -> str:
        value = self.ids[min(self.calls, len(self.ids) - 1)]
        self.calls += 1
        return value


@pytest.fixture
def store(tmp_path) -> Store:
    store = Store.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.create_schema()

    store.add_user("alice", points=2000)
    store.add_user("bob", points=100)
    store.add_user("carol", points=0)

    store.add_product("ITEM001", price=Decimal("25.00"))
    store.add_product("ITEM002", price=Decimal("10.00"))

    yield store
    store.dispose()


@pytest.fixture
def users(store) -> dict:
    accounts = AccountService(store)
    return {name: accounts.find_by_username(name).id for name in ("alice", "bob", "carol")}


@pytest.fixture
def points(store) -> PointsAccount:
    return PointsAccount(store)


@pytest.fixture
def coupons(store, points) -> CouponIssuer:
    return CouponIssuer(store, points)


@pytest.fixture
def engine(store, points, coupons) -> OrderEngine:
    return OrderEngine(store, points, coupons)


@pytest.fixture
def count_rows(store):
    def _count(model) -> int:
        with store.transaction() as session:
            return session.scalar(select(func.count()).select_from(model))

    return _count
