from __future__ import annotations


class LedgerError(Exception):
    pass


class InvalidInput(LedgerError):
    pass


class CouponUnavailable(InvalidInput):
    pass


class InvalidTransition(InvalidInput):
    pass


class InsufficientPoints(LedgerError):
    def __init__(self, user_id: int, balance: int, requested: int):
        super().__init__(f"Insufficient points for user {user_id}: have={balance}, need={requested}")
        self.user_id = user_id
        self.balance = balance
        self.requested = requested


class OrderNotPayable(LedgerError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found or not payable")
        self.order_id = order_id


class OrderNotFound(LedgerError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class UniquenessConflict(LedgerError):
    """Generated identifier already taken. Retryable."""


class StorageFailure(LedgerError):
    pass
