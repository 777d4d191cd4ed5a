from __future__ import annotations

import re
from contextlib import nullcontext
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from commerce_ledger.config import CouponOffer
from commerce_ledger.errors import CouponUnavailable, InsufficientPoints, InvalidInput
from commerce_ledger.ids import unique_insert
from commerce_ledger.models import MAX_INT32, CouponKind, TransactionType
from commerce_ledger.store import Store
from commerce_ledger.tables import Coupon, PointTransaction, User, utc_now

PHONE_PATTERN = re.compile(r"^\+601\d{8,9}$")


def _positive_points(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput(f"points amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidInput(f"points amount must be > 0, got {amount}")
    if amount > MAX_INT32:
        raise InvalidInput(f"points amount exceeds {MAX_INT32}, got {amount}")
    return amount


def _transaction_type(value: Union[TransactionType, str]) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidInput(f"Unknown point transaction type {value!r}") from None


class PointsAccount:
    """
    Per-user points balance.

    Every change writes one point_transactions row and moves users.points by
    the same delta inside one transaction. Pass session= to join a caller's
    transaction; otherwise each call commits on its own.
    """

    def __init__(self, store: Store):
        self.store = store

    def credit(
        self,
        user_id: int,
        amount: int,
        type: Union[TransactionType, str],
        description: str,
        order_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> int:
        return self._post(user_id, _positive_points(amount), type, description, order_id, session)

    def debit(
        self,
        user_id: int,
        amount: int,
        type: Union[TransactionType, str],
        description: str,
        order_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> int:
        return self._post(user_id, -_positive_points(amount), type, description, order_id, session)

    def balance(self, user_id: int) -> int:
        with self.store.transaction() as session:
            points = session.scalar(select(User.points).where(User.id == user_id))
        if points is None:
            raise InvalidInput(f"User {user_id} not found")
        return points

    def history(self, user_id: int, limit: int = 20) -> List[PointTransaction]:
        with self.store.transaction() as session:
            stmt = (
                select(PointTransaction)
                .where(PointTransaction.user_id == user_id)
                .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def reconcile(self, user_id: int) -> Tuple[int, int]:
        """(balance, sum of ledger rows); equal unless the ledger is corrupt."""
        with self.store.transaction() as session:
            balance = session.scalar(select(User.points).where(User.id == user_id))
            if balance is None:
                raise InvalidInput(f"User {user_id} not found")
            ledger_sum = session.scalar(
                select(func.coalesce(func.sum(PointTransaction.points), 0)).where(PointTransaction.user_id == user_id)
            )
        return balance, int(ledger_sum)

    def _post(
        self,
        user_id: int,
        delta: int,
        type: Union[TransactionType, str],
        description: str,
        order_id: Optional[str],
        session: Optional[Session],
    ) -> int:
        tx_type = _transaction_type(type)
        scope = nullcontext(session) if session is not None else self.store.transaction()
        with scope as s:
            user = s.execute(
                select(User).where(User.id == user_id).with_for_update().execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if user is None:
                raise InvalidInput(f"User {user_id} not found")
            if user.points + delta < 0:
                raise InsufficientPoints(user_id, user.points, -delta)
            if user.points + delta > MAX_INT32:
                raise InvalidInput(f"User {user_id} balance would exceed {MAX_INT32}")

            user.points += delta
            s.add(
                PointTransaction(
                    user_id=user_id,
                    points=delta,
                    type=tx_type,
                    description=description,
                    order_id=order_id,
                )
            )
            s.flush()
            balance = user.points

        # a joined transaction may still roll back; only report committed changes
        if session is None:
            self.store.log(f"[user={user_id}] points {delta:+d} {tx_type.value} (balance={balance})")
        return balance


class AccountService:
    def __init__(self, store: Store, points: Optional[PointsAccount] = None):
        self.store = store
        self.points = points or PointsAccount(store)

    def register(self, username: str, password_hash: str, phone: Optional[str] = None) -> User:
        """
        Create the user and grant the sign-up bonus in one transaction.

        password_hash is stored as given; hashing belongs to the caller.
        """
        if not username or not password_hash:
            raise InvalidInput("username and password_hash are required")
        if phone is not None and not PHONE_PATTERN.match(phone):
            raise InvalidInput(f"Invalid phone number {phone!r}")

        with self.store.transaction() as session:
            taken = session.scalar(select(User.id).where(User.username == username))
            if taken is not None:
                raise InvalidInput(f"Username {username} already exists")

            user = User(username=username, password_hash=password_hash, phone=phone, points=0)
            session.add(user)
            session.flush()
            self.points.credit(
                user.id,
                self.store.policy.register_bonus,
                TransactionType.REGISTER_BONUS,
                "Registration bonus",
                session=session,
            )

        self.store.log(f"[user={user.id}] registered {username}")
        return user

    def get_user(self, user_id: int) -> User:
        with self.store.transaction() as session:
            user = session.get(User, user_id)
        if user is None:
            raise InvalidInput(f"User {user_id} not found")
        return user

    def find_by_username(self, username: str) -> Optional[User]:
        with self.store.transaction() as session:
            return session.scalar(select(User).where(User.username == username))


class CouponIssuer:
    def __init__(self, store: Store, points: Optional[PointsAccount] = None):
        self.store = store
        self.points = points or PointsAccount(store)

    def resolve_offer(self, kind: Optional[str], custom_amount=None) -> Tuple[CouponKind, CouponOffer, Decimal]:
        """Map a request onto (kind, offer, discount value). Fixed amounts cost one point per unit."""
        catalog = self.store.policy.coupon_catalog
        if kind in catalog:
            offer = catalog[kind]
            return CouponKind.PERCENTAGE, offer, offer.discount_fraction

        if custom_amount is None:
            raise InvalidInput(f"Unknown coupon type {kind!r}")
        try:
            amount = Decimal(str(custom_amount))
        except ArithmeticError:
            raise InvalidInput(f"Invalid coupon amount {custom_amount!r}") from None
        if not amount.is_finite() or amount <= 0 or amount != amount.to_integral_value():
            raise InvalidInput(f"Fixed coupon amount must be a positive whole number, got {custom_amount!r}")

        points = int(amount)
        offer = CouponOffer(label=f"RM{points}", price_points=points, discount_fraction=Decimal("0"))
        return CouponKind.FIXED_AMOUNT, offer, Decimal(points)

    def purchase(self, user_id: int, kind: Optional[str], custom_amount=None) -> Coupon:
        coupon_kind, offer, discount_value = self.resolve_offer(kind, custom_amount)

        with self.store.transaction() as session:
            self.points.debit(
                user_id,
                offer.price_points,
                TransactionType.REDEEM,
                f"Coupon purchase: {offer.label}",
                session=session,
            )
            coupon = unique_insert(
                session,
                Coupon.code,
                self.store.coupon_codes,
                lambda code: Coupon(
                    code=code,
                    kind=coupon_kind,
                    label=offer.label,
                    discount_value=discount_value,
                    user_id=user_id,
                ),
                self.store.policy.id_attempts,
            )

        self.store.log(f"[user={user_id}] coupon purchased: {coupon.code} {offer.label} for {offer.price_points} points")
        return coupon

    def list_for_user(self, user_id: int) -> List[Coupon]:
        with self.store.transaction() as session:
            stmt = (
                select(Coupon)
                .where(Coupon.user_id == user_id)
                .order_by(Coupon.purchased_at.desc(), Coupon.id.desc())
            )
            return list(session.scalars(stmt))

    def consume(self, session: Session, user_id: int, code: str) -> Coupon:
        """Mark an owned, unused coupon as used inside the caller's transaction."""
        coupon = session.execute(
            select(Coupon).where(Coupon.code == code).with_for_update().execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if coupon is None or coupon.user_id != user_id:
            raise CouponUnavailable(f"Coupon {code} not found")
        if coupon.is_used:
            raise CouponUnavailable(f"Coupon {code} already used")

        coupon.is_used = True
        coupon.used_at = utc_now()
        session.flush()
        return coupon

    def release(self, session: Session, code: str) -> None:
        coupon = session.execute(
            select(Coupon).where(Coupon.code == code).with_for_update().execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if coupon is None:
            return
        coupon.is_used = False
        coupon.used_at = None
        session.flush()
