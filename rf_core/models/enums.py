"""
枚举类型定义
"""

from enum import Enum


class ReturnOrigin(str, Enum):
    """退货来源"""

    SALE = "sale"  # 客户退回
    PURCHASE = "purchase"  # 退回供应商


class ReturnStatus(str, Enum):
    """退货单状态"""

    PENDING = "pending"
    INSPECTED = "inspected"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    PROCESSED = "processed"
    CANCELLED = "cancelled"


# 这些状态的退货不计入已退数量
EXCLUDED_FROM_TALLY = frozenset({ReturnStatus.REJECTED, ReturnStatus.CANCELLED})

PROCESSABLE_STATUSES = frozenset({ReturnStatus.PENDING, ReturnStatus.INSPECTED, ReturnStatus.APPROVED})


class ItemCondition(str, Enum):
    """退回商品成色"""

    NEW = "new"
    LIKE_NEW = "like_new"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"


class ReturnReason(str, Enum):
    """退货原因"""

    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    NOT_AS_DESCRIBED = "not_as_described"
    DAMAGED_SHIPPING = "damaged_shipping"
    CHANGED_MIND = "changed_mind"
    DUPLICATE_ORDER = "duplicate_order"
    SIZE_ISSUE = "size_issue"
    QUALITY_ISSUE = "quality_issue"
    LATE_DELIVERY = "late_delivery"
    OTHER = "other"


# 商家责任：不收重新上架费
STORE_FAULT_REASONS = frozenset({ReturnReason.DEFECTIVE, ReturnReason.WRONG_ITEM, ReturnReason.DAMAGED_SHIPPING})


class ReturnAction(str, Enum):
    """处理方式"""

    REFUND = "refund"
    EXCHANGE = "exchange"
    STORE_CREDIT = "store_credit"
    REPAIR = "repair"
    REPLACE = "replace"


class RefundMethod(str, Enum):
    """退款方式"""

    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    ORIGINAL_PAYMENT = "original_payment"  # 按现金处理
    STORE_CREDIT = "store_credit"
    DEFERRED = "deferred"


IMMEDIATE_REFUND_METHODS = frozenset({RefundMethod.CASH, RefundMethod.BANK_TRANSFER, RefundMethod.ORIGINAL_PAYMENT})


class MovementType(str, Enum):
    """库存流水类型"""

    RETURN_IN = "return_in"
    RETURN_OUT = "return_out"
    RETURN_QUARANTINE = "return_quarantine"
    # 其他子系统写入的类型
    SALE = "sale"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    QUARANTINE_DISPOSAL = "quarantine_disposal"


# 只影响隔离库存的流水类型
QUARANTINE_MOVEMENTS = frozenset({MovementType.RETURN_QUARANTINE, MovementType.QUARANTINE_DISPOSAL})


class NotificationEvent(str, Enum):
    """退货通知事件"""

    REQUESTED = "return_requested"
    APPROVED = "return_approved"
    REJECTED = "return_rejected"
    COMPLETED = "return_completed"
