from .inventory import InventoryItem, InventoryLevel, StockAlert
from .transactions import Transaction
from .forecasting import DemandForecast

__all__ = [
    'InventoryItem', 'InventoryLevel', 'StockAlert',
    'Transaction',
    'DemandForecast',
]
