from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict


@dataclass(frozen=True, slots=True)
class CouponOffer:
    label: str
    price_points: int
    discount_fraction: Decimal


def _default_catalog() -> Dict[str, CouponOffer]:
    return {
        "10%": CouponOffer(label="10%", price_points=9, discount_fraction=Decimal("0.10")),
        "20%": CouponOffer(label="20%", price_points=19, discount_fraction=Decimal("0.20")),
    }


@dataclass(frozen=True, slots=True)
class LedgerPolicy:
    """
    Business constants for points and coupons.

    points_per_currency_unit: points debited per 1.00 of order discount.
    earn_points_per_currency_unit: points credited per whole 1.00 paid.
    """

    register_bonus: int = 99
    points_per_currency_unit: int = 100
    earn_points_per_currency_unit: int = 1
    coupon_catalog: Dict[str, CouponOffer] = field(default_factory=_default_catalog)

    id_attempts: int = 5
    order_id_prefix: str = "#CPMWL"
    coupon_code_prefix: str = "CPMWL"

    admin_username: str = "CPMWLADMIN"
    admin_initial_points: int = 9999
    default_payment_method: str = "tng"
    max_line_quantity: int = 10_000


DEFAULT_DATABASE_URL = "sqlite:///commerce_ledger.db"
DEFAULT_LOG_LEVEL = "INFO"


def _flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").lower() == "true"


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    echo_sql: bool = False
    log_level: str = DEFAULT_LOG_LEVEL
    policy: LedgerPolicy = field(default_factory=LedgerPolicy)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("LEDGER_DATABASE_URL", DEFAULT_DATABASE_URL),
            echo_sql=_flag("LEDGER_ECHO_SQL"),
            log_level=os.getenv("LEDGER_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        )
