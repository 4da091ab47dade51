"""
退货请求/响应模型
ORM 行只在这里转换为对外的领域对象
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import (
    ItemCondition, RefundMethod, ReturnAction, ReturnOrigin, ReturnReason, ReturnStatus
)


class InspectionRecord(BaseModel):
    """质检记录"""
    resellable: bool = Field(default=True, description="可否重新上架销售")
    condition: Optional[ItemCondition] = Field(default=None, description="质检后的成色")
    notes: Optional[str] = None
    inspected_by: Optional[str] = None
    inspected_at: Optional[datetime] = None


class ReturnItemRequest(BaseModel):
    """退货明细请求"""
    product_id: str = Field(min_length=1)
    order_line_id: str = Field(min_length=1, description="原订单行ID")
    quantity: int = Field(gt=0)
    reason: ReturnReason
    condition: ItemCondition = ItemCondition.GOOD
    action: ReturnAction = ReturnAction.REFUND
    reason_detail: Optional[str] = None


class CreateReturnRequest(BaseModel):
    """创建退货请求"""
    origin: ReturnOrigin
    order_id: str = Field(min_length=1)
    items: List[ReturnItemRequest] = Field(min_length=1)
    refund_method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT
    restocking_fee_percent: Optional[Decimal] = Field(default=None, ge=0, le=100, description="基础重新上架费率(%)")
    defer: bool = Field(default=False, description="只登记，不立即处理库存与账务")
    inspection: Optional[InspectionRecord] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_refund_method(self):
        if self.origin == ReturnOrigin.PURCHASE and self.refund_method == RefundMethod.DEFERRED:
            raise ValueError("Deferred refunds are only supported for sale returns")
        return self


class ReturnItemRead(BaseModel):
    """退货明细"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    line_no: int
    product_id: str
    order_line_id: str
    quantity: int
    unit_price: Decimal
    unit_cost: Decimal
    condition: ItemCondition
    action: ReturnAction
    reason: ReturnReason
    reason_detail: Optional[str] = None
    restocking_fee_percent: Decimal
    restocking_fee: Decimal
    refund_amount: Decimal


class ReturnRead(BaseModel):
    """退货单"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    return_number: str
    origin: ReturnOrigin
    order_id: str
    order_number: Optional[str] = None
    customer_id: Optional[str] = None
    supplier_id: Optional[str] = None
    status: ReturnStatus
    refund_method: RefundMethod
    restocking_fee_percent: Decimal
    total_refund_amount: Decimal
    total_restocking_fee: Decimal
    net_refund_amount: Decimal
    cogs_amount: Decimal
    inspection: Optional[InspectionRecord] = None
    refund_paid: bool
    refund_paid_amount: Optional[Decimal] = None
    refund_paid_method: Optional[str] = None
    refund_paid_at: Optional[datetime] = None
    refund_reference: Optional[str] = None
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    processed_by: Optional[str] = None
    status_reason: Optional[str] = None
    notes: Optional[str] = None
    return_date: date
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    items: List[ReturnItemRead] = Field(default_factory=list)


class ReturnFilter(BaseModel):
    """退货列表筛选条件"""
    status: Optional[ReturnStatus] = None
    origin: Optional[ReturnOrigin] = None
    customer_id: Optional[str] = None
    supplier_id: Optional[str] = None
    order_id: Optional[str] = None
    search: Optional[str] = Field(default=None, description="按退货单号前缀搜索")
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=200)


class ReturnPage(BaseModel):
    """分页结果"""
    items: List[ReturnRead]
    total: int
    page: int
    limit: int
    pages: int


class StatsPeriod(BaseModel):
    """统计区间（按退货日期，闭区间）"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class ReturnStats(BaseModel):
    """退货统计"""
    total_returns: int
    pending_returns: int
    total_refund_amount: Decimal
    total_restocking_fee: Decimal
    net_refund_amount: Decimal
    average_refund_amount: Decimal
    average_processing_days: float
    status_breakdown: Dict[str, int]
    origin_breakdown: Dict[str, int]


class ReturnTrendPoint(BaseModel):
    """月度趋势"""
    period: str  # YYYY-MM
    total_returns: int
    total_refund_amount: Decimal
    average_refund_amount: Decimal
