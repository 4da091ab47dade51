"""
ReturnFlow 服务层
"""
from .base import BaseService
from .transaction import TransactionRunner, classify_store_error, is_transient
from .calculator import RefundCalculator, LineAmounts, ReturnTotals
from .inventory import InventoryService
from .ledger import LedgerService, LedgerLeg, PostingMetadata
from .return_records import ReturnRecordStore, format_return_number
from .collaborators import (
    OrderLine,
    OrderSnapshot,
    ProductInfo,
    OrderLookup,
    ProductLookup,
    PartyBalanceService,
    NotificationSink,
    NullNotificationSink,
)
from .returns import ReturnOrchestrator

__all__ = [
    "BaseService",
    "TransactionRunner",
    "classify_store_error",
    "is_transient",
    "RefundCalculator",
    "LineAmounts",
    "ReturnTotals",
    "InventoryService",
    "LedgerService",
    "LedgerLeg",
    "PostingMetadata",
    "ReturnRecordStore",
    "format_return_number",
    "OrderLine",
    "OrderSnapshot",
    "ProductInfo",
    "OrderLookup",
    "ProductLookup",
    "PartyBalanceService",
    "NotificationSink",
    "NullNotificationSink",
    "ReturnOrchestrator",
]
