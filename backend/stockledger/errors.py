# Overview: Exception taxonomy for inventory, ledger, and forecasting operations.

"""
Every core failure is a ValueError subclass so an outer HTTP layer can map it to a
4xx response without knowing about individual services.

- ValidationError: rejected before any mutation (bad input, missing locations).
- ConflictError: uniqueness rule violated (duplicate SKU/barcode).
- NotFoundError: referenced row does not exist.
- InventoryLevelError: stock invariant would be violated; nothing is applied.
- TransactionStateError: lifecycle transition not allowed from the current status.
- ForecastError: forecast cannot be produced from the stored history.
"""


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate SKU)."""


class NotFoundError(ValueError):
    """404-level missing entity."""


class ItemNotFound(NotFoundError):
    def __init__(self, item_id):
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id


class LevelNotFound(NotFoundError):
    pass


class TransactionNotFound(NotFoundError):
    def __init__(self, transaction_id):
        super().__init__(f"Transaction {transaction_id} not found")
        self.transaction_id = transaction_id


class InventoryLevelError(ValueError):
    """Raised when a level mutation would break a stock invariant."""


class InsufficientStock(InventoryLevelError):
    pass


class InsufficientAvailable(InventoryLevelError):
    pass


class OverRelease(InventoryLevelError):
    pass


class CountBelowReserved(InventoryLevelError):
    pass


class TransactionStateError(ValueError):
    """Raised when a transaction lifecycle transition is not allowed."""


class NotPending(TransactionStateError):
    pass


class AlreadyCompleted(TransactionStateError):
    pass


class MustBeApproved(TransactionStateError):
    pass


class ForecastError(ValueError):
    """Raised when a forecast cannot be produced."""


class InsufficientHistory(ForecastError):
    pass


class PredictionServiceError(Exception):
    """External prediction call failed; callers fall back to the moving average."""
