"""
ReturnFlow 实用工具模块
"""

from .logger import get_logger, LogContext, setup_logging
from .errors import (
    ReturnFlowException,
    ValidationError,
    NotFoundError,
    EligibilityError,
    InvalidStateError,
    InsufficientStockError,
    TransientStoreError,
    PersistenceError,
)

__all__ = [
    "get_logger",
    "LogContext",
    "setup_logging",
    "ReturnFlowException",
    "ValidationError",
    "NotFoundError",
    "EligibilityError",
    "InvalidStateError",
    "InsufficientStockError",
    "TransientStoreError",
    "PersistenceError",
]
