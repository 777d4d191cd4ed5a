"""Tests for the points account."""
import threading

import pytest

from commerce_ledger.errors import InsufficientPoints, InvalidInput
from commerce_ledger.models import TransactionType
from commerce_ledger.services import AccountService
from commerce_ledger.tables import PointTransaction


def test_credit_and_debit_write_one_row_each(store, points, users, count_rows):
    alice = users["alice"]
    before = count_rows(PointTransaction)

    assert points.credit(alice, 50, TransactionType.EARN, "bonus") == 2050
    assert points.debit(alice, 30, "redeem", "spend") == 2020

    assert count_rows(PointTransaction) == before + 2
    history = points.history(alice)
    assert [t.points for t in history[:2]] == [-30, 50]
    assert history[0].type is TransactionType.REDEEM
    assert points.reconcile(alice) == (2020, 2020)
    assert store.logs[-1] == f"[user={alice}] points -30 redeem (balance=2020)"


def test_debit_more_than_balance_changes_nothing(points, users, count_rows):
    bob = users["bob"]
    before = count_rows(PointTransaction)

    with pytest.raises(InsufficientPoints) as exc:
        points.debit(bob, 101, TransactionType.REDEEM, "too much")

    assert exc.value.balance == 100
    assert points.balance(bob) == 100
    assert count_rows(PointTransaction) == before
    assert points.reconcile(bob) == (100, 100)


@pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True, 2**31])
def test_amount_must_be_positive_integer(points, users, amount):
    with pytest.raises(InvalidInput):
        points.credit(users["alice"], amount, TransactionType.EARN, "bad")


def test_unknown_type_and_user_rejected(points, users):
    with pytest.raises(InvalidInput):
        points.credit(users["alice"], 5, "gift", "unknown type")
    with pytest.raises(InvalidInput):
        points.debit(999, 5, TransactionType.REDEEM, "nobody")


def test_register_grants_bonus(store, points):
    user = AccountService(store, points).register("dave", "pw-hash")

    assert user.points == 99
    assert user.password_hash == "pw-hash"
    history = points.history(user.id)
    assert len(history) == 1
    assert history[0].points == 99
    assert history[0].type is TransactionType.REGISTER_BONUS
    assert points.reconcile(user.id) == (99, 99)


def test_register_rejects_duplicates_and_bad_input(store):
    accounts = AccountService(store)
    with pytest.raises(InvalidInput):
        accounts.register("alice", "pw")
    with pytest.raises(InvalidInput):
        accounts.register("", "pw")
    with pytest.raises(InvalidInput):
        accounts.register("erin", "pw", phone="12345")

    assert accounts.register("erin", "pw", phone="+60123456789").phone == "+60123456789"


def test_concurrent_debits_never_overdraw(points, users):
    bob = users["bob"]  # 100 points
    results = []
    lock = threading.Lock()

    def worker():
        try:
            points.debit(bob, 30, TransactionType.REDEEM, "race")
            outcome = "ok"
        except InsufficientPoints:
            outcome = "insufficient"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 3
    assert results.count("insufficient") == 7
    assert points.reconcile(bob) == (10, 10)


def test_balance_cannot_overflow_the_points_column(points, users, count_rows):
    alice = users["alice"]
    before = count_rows(PointTransaction)

    with pytest.raises(InvalidInput):
        points.credit(alice, 2**31 - 1, TransactionType.EARN, "overflow")

    assert count_rows(PointTransaction) == before
    assert points.reconcile(alice) == (2000, 2000)
