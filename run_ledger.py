from __future__ import annotations

import argparse
import hashlib
import logging

from commerce_ledger.config import Settings
from commerce_ledger.errors import LedgerError
from commerce_ledger.models import LineItem
from commerce_ledger.orders import OrderEngine
from commerce_ledger.reporting import AdminReporting
from commerce_ledger.services import AccountService, CouponIssuer, PointsAccount
from commerce_ledger.store import Store


def _demo_hash(password: str) -> str:
    # stand-in for the auth layer's password hasher
    return hashlib.sha256(password.encode()).hexdigest()


def main() -> None:
    settings = Settings.from_env()

    p = argparse.ArgumentParser(description="Register a user, place one order and print the ledger.")
    p.add_argument("--db", type=str, default="sqlite://", help="SQLAlchemy URL (in-memory SQLite by default)")
    p.add_argument("--username", type=str, default="demo")
    p.add_argument("--grant", type=int, default=2000, help="extra points credited before ordering")
    p.add_argument("--coupon", type=str, default=None, help="buy a coupon first: 10%%, 20%% or a whole amount")
    p.add_argument("--qty", type=int, default=1)
    p.add_argument("--discount", type=str, default="0", help="currency value paid with points")
    p.add_argument("--fail-at", type=str, default=None, help="step to fail artificially, e.g. RedeemPoints")
    p.add_argument("--pay", action="store_true", help="pay the order after creating it")
    args = p.parse_args()

    logging.basicConfig(level=settings.log_level, format="%(message)s")

    store = Store.from_url(args.db, echo=settings.echo_sql, policy=settings.policy)
    store.create_schema()
    store.seed_defaults(admin_password_hash=_demo_hash("change-me"))

    points = PointsAccount(store)
    accounts = AccountService(store, points)
    coupons = CouponIssuer(store, points)
    engine = OrderEngine(store, points, coupons)
    reporting = AdminReporting(store)

    user = accounts.register(args.username, _demo_hash("demo-password"))
    if args.grant:
        points.credit(user.id, args.grant, "earn", "Demo grant")

    coupon_code = None
    try:
        if args.coupon:
            if args.coupon in settings.policy.coupon_catalog:
                coupon = coupons.purchase(user.id, args.coupon)
            else:
                coupon = coupons.purchase(user.id, None, custom_amount=args.coupon)
            coupon_code = coupon.code

        product = reporting.list_products()[0]
        order = engine.create_order(
            user.id,
            [LineItem(name=product.name, price=product.price, quantity=args.qty, coupon_code=coupon_code)],
            point_discount=args.discount,
            fail_at_step=args.fail_at,
        )
        if args.pay:
            engine.pay(order.id, user.id, payment_reference="DEMO-REF")
        ok = True
    except LedgerError as e:
        logging.getLogger("run_ledger").error("failed: %s", e)
        ok = False

    balance, ledger_sum = points.reconcile(user.id)
    print("\n=== RESULT ===")
    print("success:", ok)
    print("balance:", balance, "ledger sum:", ledger_sum)
    print("history:", [(t.points, t.type.value, t.order_id) for t in points.history(user.id)])
    print("orders:", [(o.id, o.status.value, str(o.final_amount)) for o in engine.list_for_user(user.id)])
    print("stats:", reporting.stats())


if __name__ == "__main__":
    main()
