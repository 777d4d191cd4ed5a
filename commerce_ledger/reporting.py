"""Read-only admin views over the ledger tables."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from commerce_ledger.errors import OrderNotFound
from commerce_ledger.models import REVENUE_STATUSES
from commerce_ledger.store import Store
from commerce_ledger.tables import Order, Product, User

ZERO = Decimal("0.00")


@dataclass(slots=True)
class AdminStats:
    user_count: int
    order_count: int
    total_revenue: Decimal
    today_orders: int
    today_revenue: Decimal


@dataclass(slots=True)
class OrderRow:
    order: Order
    username: Optional[str]


@dataclass(slots=True)
class OrderDetail:
    order: Order
    username: Optional[str]
    phone: Optional[str]


class AdminReporting:
    def __init__(self, store: Store):
        self.store = store

    def stats(self, today: Optional[date] = None) -> AdminStats:
        """
        Revenue counts paid, shipped and completed orders only. The "today"
        figures count every order created on that UTC date, as the admin
        dashboard always has.
        """
        today = today or datetime.now(timezone.utc).date()
        start = datetime.combine(today, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        admin = self.store.policy.admin_username

        with self.store.transaction() as session:
            user_count = session.scalar(select(func.count(User.id)).where(User.username != admin))
            order_count = session.scalar(select(func.count(Order.id)))
            total_revenue = session.scalar(
                select(func.sum(Order.final_amount)).where(Order.status.in_(REVENUE_STATUSES))
            )
            today_orders, today_revenue = session.execute(
                select(func.count(Order.id), func.sum(Order.final_amount)).where(
                    Order.created_at >= start, Order.created_at < end
                )
            ).one()

        return AdminStats(
            user_count=user_count or 0,
            order_count=order_count or 0,
            total_revenue=Decimal(total_revenue or ZERO).quantize(ZERO),
            today_orders=today_orders or 0,
            today_revenue=Decimal(today_revenue or ZERO).quantize(ZERO),
        )

    def list_orders(self) -> List[OrderRow]:
        with self.store.transaction() as session:
            rows = session.execute(
                select(Order, User.username)
                .outerjoin(User, Order.user_id == User.id)
                .order_by(Order.created_at.desc())
            ).all()
        return [OrderRow(order=order, username=username) for order, username in rows]

    def order_detail(self, order_id: str) -> OrderDetail:
        with self.store.transaction() as session:
            row = session.execute(
                select(Order, User.username, User.phone)
                .options(selectinload(Order.items))
                .outerjoin(User, Order.user_id == User.id)
                .where(Order.id == order_id)
            ).one_or_none()
        if row is None:
            raise OrderNotFound(order_id)
        order, username, phone = row
        return OrderDetail(order=order, username=username, phone=phone)

    def list_users(self) -> List[User]:
        admin = self.store.policy.admin_username
        with self.store.transaction() as session:
            stmt = select(User).where(User.username != admin).order_by(User.created_at.desc(), User.id.desc())
            return list(session.scalars(stmt))

    def list_products(self) -> List[Product]:
        with self.store.transaction() as session:
            return list(session.scalars(select(Product).order_by(Product.id.desc())))
