"""
外部协作方接口
订单查询、商品查询、往来余额、通知由宿主系统提供，这里只定义边界
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from rf_core.models.enums import NotificationEvent, ReturnOrigin
from rf_core.models.schemas import ReturnRead


@dataclass(frozen=True)
class OrderLine:
    """原订单行"""
    line_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class OrderSnapshot:
    """原订单（销售单或采购单）"""
    order_id: str
    origin: ReturnOrigin
    order_date: date
    order_number: Optional[str] = None
    customer_id: Optional[str] = None
    supplier_id: Optional[str] = None
    lines: List[OrderLine] = field(default_factory=list)

    def line(self, line_id: str) -> Optional[OrderLine]:
        for line in self.lines:
            if line.line_id == line_id:
                return line
        return None


@dataclass(frozen=True)
class ProductInfo:
    product_id: str
    name: str
    sku: Optional[str] = None


@runtime_checkable
class OrderLookup(Protocol):
    async def get_order(self, order_id: str, origin: ReturnOrigin) -> Optional[OrderSnapshot]:
        """未找到返回 None；找到但没有行时返回 lines 为空的订单"""
        ...


@runtime_checkable
class ProductLookup(Protocol):
    async def get_product(self, product_id: str) -> Optional[ProductInfo]:
        ...


@runtime_checkable
class PartyBalanceService(Protocol):
    async def record_refund(
        self,
        party_id: str,
        amount: Decimal,
        original_order_id: str,
        metadata: Dict[str, Any],
    ) -> None:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    async def notify(self, ret: ReturnRead, event: NotificationEvent) -> None:
        ...


class NullNotificationSink:
    """不发送任何通知"""

    async def notify(self, ret: ReturnRead, event: NotificationEvent) -> None:
        return None
