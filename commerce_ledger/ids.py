from __future__ import annotations

import logging
import random
import time
import uuid
from typing import Callable, Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import InstrumentedAttribute, Session

from commerce_ledger.errors import StorageFailure, UniquenessConflict

logger = logging.getLogger(__name__)

Row = TypeVar("Row")


class IdGenerator(Protocol):
    def __call__(self) -> str: ...


class TimestampIdGenerator:
    """Millisecond timestamp followed by a random 0-999 suffix, e.g. CPMWL1718000000000417."""

    def __init__(self, prefix: str = "", rng: random.Random | None = None):
        self.prefix = prefix
        self.rng = rng or random.SystemRandom()

    def __call__(self) -> str:
        return f"{self.prefix}{int(time.time() * 1000)}{self.rng.randrange(1000)}"


class UuidIdGenerator:
    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def __call__(self) -> str:
        return f"{self.prefix}{uuid.uuid4().hex.upper()}"


def unique_insert(
    session: Session,
    key_column: InstrumentedAttribute,
    generate: IdGenerator,
    build: Callable[[str], Row],
    attempts: int,
) -> Row:
    """
    Insert the row returned by build(key) under a savepoint, drawing a new key
    whenever the generated one is already taken. Other integrity errors propagate.
    """
    last_conflict: UniquenessConflict | None = None
    for attempt in range(1, attempts + 1):
        key = generate()
        row = build(key)
        try:
            with session.begin_nested():
                session.add(row)
                session.flush()
        except IntegrityError:
            taken = session.scalar(select(key_column).where(key_column == key))
            if taken is None:
                raise
            last_conflict = UniquenessConflict(f"{key_column.key}={key} already exists")
            logger.warning("identifier collision on %s (attempt %d/%d)", key, attempt, attempts)
            continue
        return row

    raise StorageFailure(f"Could not generate a unique {key_column.key} after {attempts} attempts") from last_conflict
