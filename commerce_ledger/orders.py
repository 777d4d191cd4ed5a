from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Iterable, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from commerce_ledger.errors import (
    InvalidInput,
    InvalidTransition,
    LedgerError,
    OrderNotFound,
    OrderNotPayable,
)
from commerce_ledger.ids import unique_insert
from commerce_ledger.models import (
    CENTS,
    MAX_INT32,
    MAX_MONEY,
    ORDER_TRANSITIONS,
    LineItem,
    OrderAmounts,
    OrderStatus,
    PaymentResult,
    TransactionType,
)
from commerce_ledger.services import CouponIssuer, PointsAccount
from commerce_ledger.store import Store
from commerce_ledger.tables import AdminLog, Order, OrderItem, PointTransaction, User

ADMIN_TARGETS = frozenset({OrderStatus.SHIPPED, OrderStatus.COMPLETED, OrderStatus.CANCELLED})


class InjectedFailure(LedgerError):
    pass


def _money(value, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidInput(f"{field_name} must be a number, got {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite() or amount < 0:
            raise InvalidInput(f"{field_name} must be >= 0, got {value!r}")
        if amount > MAX_MONEY:
            raise InvalidInput(f"{field_name} exceeds {MAX_MONEY}: {value!r}")
        cents = amount.quantize(CENTS)
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{field_name} must be a number, got {value!r}") from None
    if amount != cents:
        raise InvalidInput(f"{field_name} has more than two decimal places: {value!r}")
    return cents


def parse_line_item(raw: Union[LineItem, Mapping], max_quantity: int = MAX_INT32) -> LineItem:
    """
    Accept a LineItem or a cart payload, either flat
    {"name", "price", "quantity", "coupon_code"} or nested
    {"product": {"id", "name", "price", "code"}, "quantity"}.
    """
    if isinstance(raw, LineItem):
        name, price, quantity, coupon_code, product_id = (
            raw.name, raw.price, raw.quantity, raw.coupon_code, raw.product_id,
        )
    elif isinstance(raw, Mapping):
        product = raw.get("product") if isinstance(raw.get("product"), Mapping) else raw
        name = product.get("name")
        price = product.get("price")
        coupon_code = product.get("coupon_code") or product.get("code") or raw.get("coupon_code")
        product_id = product.get("id") if product is not raw else raw.get("product_id")
        quantity = raw.get("quantity")
    else:
        raise InvalidInput(f"Unsupported line item {raw!r}")

    if not name:
        raise InvalidInput("line item name is required")
    if price is None:
        raise InvalidInput(f"line item {name!r} has no price")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidInput(f"line item {name!r} quantity must be a positive integer, got {quantity!r}")
    if quantity > max_quantity:
        raise InvalidInput(f"line item {name!r} quantity exceeds {max_quantity}, got {quantity}")

    return LineItem(
        name=str(name),
        price=_money(price, "price"),
        quantity=quantity,
        coupon_code=coupon_code or None,
        product_id=product_id,
    )


@dataclass
class OrderDraft:
    user_id: int
    items: List[LineItem]
    amounts: OrderAmounts
    payment_method: str
    order: Optional[Order] = None
    consumed_coupons: List[str] = field(default_factory=list)

    @property
    def tag(self) -> str:
        return self.order.id if self.order is not None else "new"


class Step(ABC):
    def __init__(self, engine: "OrderEngine", session: Session, draft: OrderDraft):
        self.engine = engine
        self.store = engine.store
        self.session = session
        self.draft = draft

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def execute(self) -> None: ...

    def run(self) -> None:
        self.store.log(f"[order={self.draft.tag}] STEP {self.name()}")
        self.execute()
        self.store.log(f"[order={self.draft.tag}] STEP {self.name()} OK")


class InsertOrder(Step):
    def name(self) -> str:
        return "InsertOrder"

    def execute(self) -> None:
        amounts = self.draft.amounts
        self.draft.order = unique_insert(
            self.session,
            Order.id,
            self.store.order_ids,
            lambda order_id: Order(
                id=order_id,
                user_id=self.draft.user_id,
                total_amount=amounts.total_amount,
                point_discount=amounts.point_discount,
                final_amount=amounts.final_amount,
                status=OrderStatus.PENDING,
                payment_method=self.draft.payment_method,
            ),
            self.store.policy.id_attempts,
        )


class InsertOrderItems(Step):
    def name(self) -> str:
        return "InsertOrderItems"

    def execute(self) -> None:
        order = self.draft.order
        for item in self.draft.items:
            order.items.append(
                OrderItem(
                    product_name=item.name,
                    product_price=item.price,
                    quantity=item.quantity,
                    coupon_code=item.coupon_code,
                )
            )
        self.session.flush()


class ConsumeCoupons(Step):
    def name(self) -> str:
        return "ConsumeCoupons"

    def execute(self) -> None:
        for item in self.draft.items:
            if item.coupon_code:
                self.engine.coupons.consume(self.session, self.draft.user_id, item.coupon_code)
                self.draft.consumed_coupons.append(item.coupon_code)


class RedeemPoints(Step):
    def name(self) -> str:
        return "RedeemPoints"

    def execute(self) -> None:
        self.engine.points.debit(
            self.draft.user_id,
            self.draft.amounts.points_redeemed,
            TransactionType.REDEEM,
            "Order points discount",
            order_id=self.draft.order.id,
            session=self.session,
        )


class OrderEngine:
    """
    Order lifecycle: pending -> paid -> shipped -> completed, pending -> cancelled.

    create_order runs its steps inside one transaction, so a failure at any
    step leaves no order, item, coupon or points change behind.
    """

    def __init__(
        self,
        store: Store,
        points: Optional[PointsAccount] = None,
        coupons: Optional[CouponIssuer] = None,
    ):
        self.store = store
        self.points = points or PointsAccount(store)
        self.coupons = coupons or CouponIssuer(store, self.points)

    def calculate_amounts(self, items: List[LineItem], point_discount=Decimal("0")) -> OrderAmounts:
        for item in items:
            if item.subtotal > MAX_MONEY:
                raise InvalidInput(f"line item {item.name!r} subtotal {item.subtotal} exceeds {MAX_MONEY}")
        total = sum((item.subtotal for item in items), Decimal("0"))
        if total > MAX_MONEY:
            raise InvalidInput(f"order total {total} exceeds {MAX_MONEY}")
        total = total.quantize(CENTS)
        discount = _money(point_discount or Decimal("0"), "point_discount")
        if discount > total:
            raise InvalidInput(f"point_discount {discount} exceeds order total {total}")

        points = discount * self.store.policy.points_per_currency_unit
        if points != points.to_integral_value():
            raise InvalidInput(f"point_discount {discount} does not convert to whole points")

        return OrderAmounts(
            total_amount=total,
            point_discount=discount,
            final_amount=(total - discount).quantize(CENTS),
            points_redeemed=int(points),
        )

    def create_order(
        self,
        user_id: int,
        items: Iterable[Union[LineItem, Mapping]],
        point_discount=Decimal("0"),
        payment_method: Optional[str] = None,
        fail_at_step: Optional[str] = None,
    ) -> Order:
        lines = [parse_line_item(x, self.store.policy.max_line_quantity) for x in (items or [])]
        if not lines:
            raise InvalidInput("Order has no items")
        amounts = self.calculate_amounts(lines, point_discount)
        draft = OrderDraft(
            user_id=user_id,
            items=lines,
            amounts=amounts,
            payment_method=payment_method or self.store.policy.default_payment_method,
        )

        self.store.log(
            f"[user={user_id}] ORDER START items={len(lines)} total={amounts.total_amount} "
            f"discount={amounts.point_discount} final={amounts.final_amount}"
        )

        try:
            with self.store.transaction() as session:
                if session.get(User, user_id) is None:
                    raise InvalidInput(f"User {user_id} not found")

                steps: List[Step] = [InsertOrder(self, session, draft), InsertOrderItems(self, session, draft)]
                if any(item.coupon_code for item in lines):
                    steps.append(ConsumeCoupons(self, session, draft))
                if amounts.points_redeemed:
                    steps.append(RedeemPoints(self, session, draft))

                for step in steps:
                    if fail_at_step == step.name():
                        raise InjectedFailure(f"Artificial failure at step {step.name()}")
                    step.run()
        except LedgerError as e:
            self.store.log(f"[order={draft.tag}] ORDER FAILED: {e}")
            raise

        self.store.log(f"[order={draft.order.id}] ORDER OK")
        return draft.order

    def pay(self, order_id: str, user_id: int, payment_reference: Optional[str] = None) -> PaymentResult:
        with self.store.transaction() as session:
            order = self._lock_order(session, order_id)
            if order is None or order.user_id != user_id or order.status is not OrderStatus.PENDING:
                raise OrderNotPayable(order_id)

            order.status = OrderStatus.PAID
            order.payment_reference = payment_reference
            whole = int(order.final_amount.to_integral_value(rounding=ROUND_FLOOR))
            earned = whole * self.store.policy.earn_points_per_currency_unit
            if earned > 0:
                self.points.credit(
                    user_id,
                    earned,
                    TransactionType.PURCHASE_EARN,
                    "Points earned from purchase",
                    order_id=order_id,
                    session=session,
                )

        self.store.log(f"[order={order_id}] paid, points earned={earned}")
        return PaymentResult(order_id=order_id, points_earned=earned)

    def advance_status(
        self,
        order_id: str,
        status: Union[OrderStatus, str],
        admin_id: Optional[int] = None,
    ) -> Order:
        """
        Administrative move to shipped, completed or cancelled.
        Requesting the current status is a no-op; anything else off the
        lifecycle raises InvalidTransition. Payment goes through pay().
        """
        try:
            target = OrderStatus(status)
        except ValueError:
            raise InvalidInput(f"Unknown order status {status!r}") from None
        if target not in ADMIN_TARGETS:
            raise InvalidTransition(f"Status {target.value} cannot be set administratively")

        with self.store.transaction() as session:
            order = self._lock_order(session, order_id)
            if order is None:
                raise OrderNotFound(order_id)

            current = order.status
            if current is target:
                return order
            if target not in ORDER_TRANSITIONS[current]:
                raise InvalidTransition(f"Order {order_id} cannot move from {current.value} to {target.value}")

            if target is OrderStatus.CANCELLED:
                self._release_order(session, order)
            order.status = target

            if admin_id is not None:
                session.add(
                    AdminLog(
                        admin_id=admin_id,
                        action="update_order_status",
                        target_type="order",
                        target_id=order_id,
                        details=f"status {current.value} -> {target.value}",
                    )
                )

        self.store.log(f"[order={order_id}] status {current.value} -> {target.value}")
        return order

    def cancel(self, order_id: str, admin_id: Optional[int] = None) -> Order:
        return self.advance_status(order_id, OrderStatus.CANCELLED, admin_id=admin_id)

    def get_order(self, order_id: str, user_id: Optional[int] = None) -> Order:
        with self.store.transaction() as session:
            order = session.scalar(select(Order).options(selectinload(Order.items)).where(Order.id == order_id))
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound(order_id)
        return order

    def list_for_user(self, user_id: int) -> List[Order]:
        with self.store.transaction() as session:
            stmt = (
                select(Order)
                .options(selectinload(Order.items))
                .where(Order.user_id == user_id)
                .order_by(Order.created_at.desc())
            )
            return list(session.scalars(stmt))

    @staticmethod
    def _lock_order(session: Session, order_id: str) -> Optional[Order]:
        return session.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _release_order(self, session: Session, order: Order) -> None:
        # a cancelled order gives back the points and coupons it used
        redeemed = session.scalars(
            select(PointTransaction.points).where(
                PointTransaction.order_id == order.id,
                PointTransaction.type == TransactionType.REDEEM,
            )
        ).all()
        refund = -sum(redeemed)
        if refund > 0:
            self.points.credit(
                order.user_id,
                refund,
                TransactionType.EARN,
                "Refund for cancelled order",
                order_id=order.id,
                session=session,
            )
        for item in order.items:
            if item.coupon_code:
                self.coupons.release(session, item.coupon_code)
