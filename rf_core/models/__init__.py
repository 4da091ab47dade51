"""
ReturnFlow 数据模型包
"""
from .base import Base
from .returns import Return, ReturnItem, ReturnSequence, ReturnOrderLock
from .inventory import InventoryBalance, StockMovement
from .ledger import LedgerEntry

__all__ = [
    "Base",
    "Return",
    "ReturnItem",
    "ReturnSequence",
    "ReturnOrderLock",
    "InventoryBalance",
    "StockMovement",
    "LedgerEntry",
]
