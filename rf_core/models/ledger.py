"""
总账分录数据模型
只追加：冲销通过反向分录实现，不修改、不删除
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Date, DateTime, Numeric, String, Text,
    CheckConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, IdType, utcnow


class LedgerEntry(Base):
    """总账分录表"""
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(IdType, primary_key=True)

    # 同一借贷对共享的关联ID
    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False)

    account_code: Mapped[str] = mapped_column(String(32), nullable=False)
    debit_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    credit_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reference_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    supplier_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")
    reverses_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(debit_amount > 0 AND credit_amount = 0) OR (debit_amount = 0 AND credit_amount > 0)",
            name="ck_ledger_entries_one_sided",
        ),
        Index("ix_ledger_entries_account", "account_code"),
        Index("ix_ledger_entries_reference", "reference_id"),
        Index("ix_ledger_entries_transaction", "transaction_id"),
        Index("ix_ledger_entries_reverses", "reverses_transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(account={self.account_code}, debit={self.debit_amount}, "
            f"credit={self.credit_amount}, ref={self.reference_number})>"
        )
