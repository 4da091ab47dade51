"""
退货单数据模型
退货单号 RET-YYYYMMDD-NNNN，按天递增
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
    CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, IdType, JsonType, utcnow
from .enums import ReturnStatus


class Return(Base):
    """退货单表"""
    __tablename__ = "returns"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    return_number: Mapped[str] = mapped_column(String(32), nullable=False, comment="退货单号")

    # 来源与原单
    origin: Mapped[str] = mapped_column(String(16), nullable=False, comment="sale / purchase")
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="原订单ID")
    order_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="原订单号")

    # 往来方（二选一）
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="客户ID")
    supplier_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="供应商ID")

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ReturnStatus.PENDING.value, comment="退货状态"
    )
    refund_method: Mapped[str] = mapped_column(String(32), nullable=False, comment="退款方式")
    restocking_fee_percent: Mapped[Decimal] = mapped_column(
        Numeric(9, 4), nullable=False, default=Decimal("0"), comment="基础重新上架费率(%)"
    )

    # 金额（必须使用 Decimal）
    total_refund_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    total_restocking_fee: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    net_refund_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    cogs_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 4), nullable=False, default=Decimal("0"), comment="原始成本合计"
    )

    # 质检记录
    inspection: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)

    # 实际退款
    refund_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refund_paid_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    refund_paid_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    refund_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # 操作人
    requested_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    processed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="驳回/取消原因")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # 时间戳（全部在应用侧赋值）
    return_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[List["ReturnItem"]] = relationship(
        "ReturnItem",
        back_populates="return_",
        cascade="all, delete-orphan",
        order_by="ReturnItem.line_no",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("return_number", name="uq_returns_return_number"),
        CheckConstraint(
            "(customer_id IS NOT NULL AND supplier_id IS NULL) OR "
            "(customer_id IS NULL AND supplier_id IS NOT NULL)",
            name="ck_returns_single_party",
        ),
        Index("ix_returns_order", "origin", "order_id"),
        Index("ix_returns_status", "status"),
        Index("ix_returns_return_date", "return_date"),
    )

    def __repr__(self) -> str:
        return f"<Return(id={self.id}, number={self.return_number}, status={self.status})>"

    @property
    def party_id(self) -> Optional[str]:
        return self.customer_id or self.supplier_id


class ReturnItem(Base):
    """退货明细表"""
    __tablename__ = "return_items"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    return_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        ForeignKey("returns.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_line_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="原订单行ID")
    quantity: Mapped[int] = mapped_column(Integer, CheckConstraint("quantity > 0"), nullable=False)

    # 原单价格与成本
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)

    condition: Mapped[str] = mapped_column(String(16), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    reason_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    restocking_fee_percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False, default=Decimal("0"))
    restocking_fee: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))

    return_: Mapped["Return"] = relationship("Return", back_populates="items")

    __table_args__ = (
        UniqueConstraint("return_id", "line_no", name="uq_return_items_line"),
        Index("ix_return_items_order_line", "order_line_id"),
    )


class ReturnSequence(Base):
    """退货单号日序列"""
    __tablename__ = "return_sequences"

    day: Mapped[str] = mapped_column(String(8), primary_key=True, comment="YYYYMMDD")
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ReturnOrderLock(Base):
    """原订单行锁：同一原单的退货串行执行"""
    __tablename__ = "return_order_locks"

    origin: Mapped[str] = mapped_column(String(16), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
