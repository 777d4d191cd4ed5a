from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import Engine, create_engine, event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from commerce_ledger.config import LedgerPolicy, Settings
from commerce_ledger.errors import StorageFailure
from commerce_ledger.ids import IdGenerator, TimestampIdGenerator
from commerce_ledger.models import TransactionType
from commerce_ledger.tables import Base, PointTransaction, Product, User

logger = logging.getLogger(__name__)

SAMPLE_PRODUCTS = [
    ("Car paint job A", Decimal("99.99"), "Premium car paint service"),
    ("Motorcycle paint B", Decimal("79.99"), "Professional motorcycle paint"),
    ("Bicycle paint C", Decimal("49.99"), "Custom bicycle paint"),
    ("Metal coating D", Decimal("129.99"), "Metal surface treatment"),
    ("Plastic coating E", Decimal("69.99"), "Plastic material coating"),
]


def _configure_sqlite(engine: Engine) -> None:
    # pysqlite opens transactions lazily and without a write lock; take the
    # lock at BEGIN so concurrent writers queue instead of deadlocking.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Store:
    """
    Ledger store on top of a SQLAlchemy engine.

    All mutations go through transaction(): one session, one database
    transaction, commit on normal exit and rollback on every other exit.
    Nothing mutable is cached between calls.

    logs keeps the messages written through log() (for the CLI and tests).
    """

    def __init__(
        self,
        engine: Engine,
        policy: Optional[LedgerPolicy] = None,
        order_ids: Optional[IdGenerator] = None,
        coupon_codes: Optional[IdGenerator] = None,
    ) -> None:
        self.engine = engine
        self.policy = policy or LedgerPolicy()
        self.order_ids: IdGenerator = order_ids or TimestampIdGenerator(self.policy.order_id_prefix)
        self.coupon_codes: IdGenerator = coupon_codes or TimestampIdGenerator(self.policy.coupon_code_prefix)
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

        self.logs: List[str] = []

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False, policy: Optional[LedgerPolicy] = None) -> "Store":
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        engine = create_engine(url, echo=echo, connect_args=connect_args)
        if engine.dialect.name == "sqlite":
            _configure_sqlite(engine)
        return cls(engine, policy=policy)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Store":
        return cls.from_url(settings.database_url, echo=settings.echo_sql, policy=settings.policy)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.error("transaction rolled back: %s", exc)
            raise StorageFailure(str(exc)) from exc
        finally:
            session.close()

    def log(self, message: str) -> None:
        self.logs.append(message)
        logger.info(message)

    # Seed helpers
    def add_user(self, username: str, points: int = 0, password_hash: str = "x", phone: Optional[str] = None) -> int:
        """Create a user; a non-zero starting balance is written through an earn row."""
        with self.transaction() as session:
            user = User(username=username, password_hash=password_hash, phone=phone, points=points)
            session.add(user)
            session.flush()
            if points:
                session.add(
                    PointTransaction(
                        user_id=user.id,
                        points=points,
                        type=TransactionType.EARN,
                        description="Initial balance",
                    )
                )
            return user.id

    def add_product(self, name: str, price: Decimal, description: str = "") -> int:
        with self.transaction() as session:
            product = Product(name=name, price=price, description=description)
            session.add(product)
            session.flush()
            return product.id

    def seed_defaults(self, admin_password_hash: str) -> None:
        """Admin account and sample catalog, both only if missing."""
        with self.transaction() as session:
            has_admin = session.scalar(select(User.id).where(User.username == self.policy.admin_username))
        if has_admin is None:
            self.add_user(
                self.policy.admin_username,
                points=self.policy.admin_initial_points,
                password_hash=admin_password_hash,
            )
            self.log(f"admin account {self.policy.admin_username} created")

        with self.transaction() as session:
            product_count = session.scalar(select(func.count(Product.id)))
        if not product_count:
            for name, price, description in SAMPLE_PRODUCTS:
                self.add_product(name, price, description)
            self.log(f"{len(SAMPLE_PRODUCTS)} sample products added")
