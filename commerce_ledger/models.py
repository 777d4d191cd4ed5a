from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

CENTS = Decimal("0.01")

# NUMERIC(10, 2) and 32-bit INTEGER column limits
MAX_MONEY = Decimal("99999999.99")
MAX_INT32 = 2**31 - 1


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# pending -> paid -> shipped -> completed, pending -> cancelled
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

REVENUE_STATUSES = (OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.COMPLETED)


class TransactionType(str, enum.Enum):
    EARN = "earn"
    REDEEM = "redeem"
    REGISTER_BONUS = "register_bonus"
    PURCHASE_EARN = "purchase_earn"


class CouponKind(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


@dataclass(slots=True)
class LineItem:
    """
    Snapshot of one cart line as sent by the caller.
    The price is trusted as given; the catalog is not consulted.
    """

    name: str
    price: Decimal
    quantity: int
    coupon_code: Optional[str] = None
    product_id: Optional[int] = None

    @property
    def subtotal(self) -> Decimal:
        return self.price * Decimal(self.quantity)


@dataclass(slots=True)
class OrderAmounts:
    total_amount: Decimal
    point_discount: Decimal
    final_amount: Decimal
    points_redeemed: int


@dataclass(slots=True)
class PaymentResult:
    order_id: str
    points_earned: int
