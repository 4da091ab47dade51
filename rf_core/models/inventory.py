"""
库存余额与库存流水数据模型
余额是流水的物化投影，可由流水重算
"""
from datetime import datetime
from typing import Optional
from decimal import Decimal

from sqlalchemy import (
    BigInteger, Integer, DateTime, String, Numeric,
    CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, IdType, utcnow


class InventoryBalance(Base):
    """库存余额表（每个商品一行）"""
    __tablename__ = "inventory_balances"

    product_id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="商品ID")

    quantity: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity >= 0"),
        nullable=False,
        default=0,
        comment="可售数量"
    )
    quantity_reserved: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity_reserved >= 0"),
        nullable=False,
        default=0,
        comment="预留数量"
    )
    quantity_quarantine: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity_quarantine >= 0"),
        nullable=False,
        default=0,
        comment="隔离数量"
    )

    last_movement_id: Mapped[Optional[int]] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), nullable=True
    )
    last_movement_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="最后更新时间"
    )


class StockMovement(Base):
    """库存流水表（只追加）"""
    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    movement_type: Mapped[str] = mapped_column(String(32), nullable=False)

    # 带符号数量：入库为正，出库为负
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    total_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))

    # 所影响数量桶（可售或隔离）变动前后的快照
    previous_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)

    reference_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reference_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_stock_movements_idempotency_key"),
        Index("ix_stock_movements_product", "product_id"),
        Index("ix_stock_movements_reference", "reference_type", "reference_id"),
    )
