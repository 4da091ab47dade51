"""
总账过账服务
借贷成对写入，只追加；冲销通过反向分录完成
"""
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rf_core.models import LedgerEntry, Return
from rf_core.models.base import utcnow
from rf_core.models.enums import IMMEDIATE_REFUND_METHODS, RefundMethod, ReturnOrigin
from rf_core.utils.errors import InvalidStateError, NotFoundError, ValidationError
from .base import BaseService

ZERO = Decimal("0")

SALE_RETURN_REFERENCE = "sale_return"
PURCHASE_RETURN_REFERENCE = "purchase_return"


@dataclass(frozen=True)
class LedgerLeg:
    """分录的一边"""
    account_code: str
    amount: Decimal
    description: Optional[str] = None


@dataclass(frozen=True)
class PostingMetadata:
    """同一对分录共享的引用信息"""
    reference_type: str
    reference_id: str
    reference_number: Optional[str] = None
    transaction_date: Optional[date] = None
    customer_id: Optional[str] = None
    supplier_id: Optional[str] = None
    actor: Optional[str] = None


class LedgerService(BaseService):
    """总账过账服务：分录表的唯一写入方"""

    @property
    def accounts(self):
        return self.settings.account_codes

    async def create_double_entry(
        self,
        session: AsyncSession,
        debit_leg: LedgerLeg,
        credit_leg: LedgerLeg,
        metadata: PostingMetadata,
        reverses_transaction_id: Optional[str] = None,
    ) -> Tuple[LedgerEntry, LedgerEntry]:
        """
        写入一对借贷分录

        两行共享 transaction_id，一行只有借方金额，另一行只有贷方金额。
        调用方提供事务会话，两行要么同时提交要么同时回滚。
        """
        debit_amount = Decimal(debit_leg.amount)
        credit_amount = Decimal(credit_leg.amount)

        if debit_amount <= ZERO or credit_amount <= ZERO:
            raise ValidationError(
                code="INVALID_POSTING_AMOUNT",
                detail="Ledger amounts must be positive",
                debit_amount=debit_amount,
                credit_amount=credit_amount,
            )
        if debit_amount != credit_amount:
            raise ValidationError(
                code="UNBALANCED_POSTING",
                detail=f"Debit {debit_amount} does not equal credit {credit_amount}",
            )
        if debit_leg.account_code == credit_leg.account_code:
            raise ValidationError(
                code="SAME_ACCOUNT_POSTING",
                detail=f"Debit and credit accounts are both {debit_leg.account_code}",
            )

        transaction_id = str(uuid.uuid4())
        transaction_date = metadata.transaction_date or utcnow().date()
        now = utcnow()

        common = dict(
            transaction_id=transaction_id,
            transaction_date=transaction_date,
            reference_type=metadata.reference_type,
            reference_id=metadata.reference_id,
            reference_number=metadata.reference_number,
            customer_id=metadata.customer_id,
            supplier_id=metadata.supplier_id,
            status="completed",
            reverses_transaction_id=reverses_transaction_id,
            created_by=metadata.actor,
            created_at=now,
        )
        debit = LedgerEntry(
            account_code=debit_leg.account_code,
            debit_amount=debit_amount,
            credit_amount=ZERO,
            description=debit_leg.description,
            **common,
        )
        credit = LedgerEntry(
            account_code=credit_leg.account_code,
            debit_amount=ZERO,
            credit_amount=credit_amount,
            description=credit_leg.description,
            **common,
        )
        session.add_all([debit, credit])
        await session.flush()

        self.logger.debug(
            "Posted double entry",
            transaction_id=transaction_id,
            debit_account=debit_leg.account_code,
            credit_account=credit_leg.account_code,
            amount=str(debit_amount),
            reference=metadata.reference_number,
        )
        return debit, credit

    async def _post_pair(
        self,
        session: AsyncSession,
        debit_account: str,
        credit_account: str,
        amount: Decimal,
        description: str,
        metadata: PostingMetadata,
    ) -> Optional[str]:
        """金额为 0 的分录对不写入"""
        if amount is None or Decimal(amount) <= ZERO:
            return None
        debit, _ = await self.create_double_entry(
            session,
            LedgerLeg(debit_account, amount, description),
            LedgerLeg(credit_account, amount, description),
            metadata,
        )
        return debit.transaction_id

    def _cash_account(self, method: str) -> str:
        if RefundMethod(method) == RefundMethod.BANK_TRANSFER:
            return self.accounts.bank
        return self.accounts.cash

    @staticmethod
    def _metadata_for(ret: Return, actor: Optional[str]) -> PostingMetadata:
        reference_type = (
            SALE_RETURN_REFERENCE if ret.origin == ReturnOrigin.SALE.value else PURCHASE_RETURN_REFERENCE
        )
        return PostingMetadata(
            reference_type=reference_type,
            reference_id=str(ret.id),
            reference_number=ret.return_number,
            transaction_date=ret.return_date,
            customer_id=ret.customer_id,
            supplier_id=ret.supplier_id,
            actor=actor,
        )

    async def post_sale_return(self, session: AsyncSession, ret: Return, actor: Optional[str] = None) -> List[str]:
        """
        销售退货过账

        1. 借 销售退回 / 贷 应收账款（净退款额，延期退款也照常过账）
        2. 现金/银行即时退款：借 应收账款 / 贷 现金(银行)
        3. 成本冲回：借 库存 / 贷 主营业务成本
        """
        accounts = self.accounts
        metadata = self._metadata_for(ret, actor)
        number = ret.return_number
        posted = []

        posted.append(await self._post_pair(
            session, accounts.sales_returns, accounts.accounts_receivable,
            ret.net_refund_amount, f"Sales return {number}", metadata,
        ))

        if RefundMethod(ret.refund_method) in IMMEDIATE_REFUND_METHODS:
            posted.append(await self._post_pair(
                session, accounts.accounts_receivable, self._cash_account(ret.refund_method),
                ret.net_refund_amount, f"Refund paid for {number}", metadata,
            ))

        posted.append(await self._post_pair(
            session, accounts.inventory, accounts.cost_of_goods_sold,
            ret.cogs_amount, f"COGS reversal for {number}", metadata,
        ))

        return [transaction_id for transaction_id in posted if transaction_id]

    async def post_purchase_return(self, session: AsyncSession, ret: Return, actor: Optional[str] = None) -> List[str]:
        """
        采购退货过账

        1. 借 应付账款 / 贷 采购退回（净额）
        2. 供应商现金/银行退款：借 现金(银行) / 贷 应付账款
        3. 成本冲回：借 主营业务成本 / 贷 库存
        """
        accounts = self.accounts
        metadata = self._metadata_for(ret, actor)
        number = ret.return_number
        posted = []

        posted.append(await self._post_pair(
            session, accounts.accounts_payable, accounts.purchase_returns,
            ret.net_refund_amount, f"Purchase return {number}", metadata,
        ))

        if RefundMethod(ret.refund_method) in IMMEDIATE_REFUND_METHODS:
            posted.append(await self._post_pair(
                session, self._cash_account(ret.refund_method), accounts.accounts_payable,
                ret.net_refund_amount, f"Supplier refund received for {number}", metadata,
            ))

        posted.append(await self._post_pair(
            session, accounts.cost_of_goods_sold, accounts.inventory,
            ret.cogs_amount, f"Inventory reversal for {number}", metadata,
        ))

        return [transaction_id for transaction_id in posted if transaction_id]

    async def post_return(self, session: AsyncSession, ret: Return, actor: Optional[str] = None) -> List[str]:
        if ret.origin == ReturnOrigin.SALE.value:
            return await self.post_sale_return(session, ret, actor)
        return await self.post_purchase_return(session, ret, actor)

    async def post_deferred_refund(
        self,
        session: AsyncSession,
        ret: Return,
        amount: Decimal,
        method: RefundMethod,
        actor: Optional[str] = None,
    ) -> Optional[str]:
        """延期退款实付：借 应收账款 / 贷 现金(银行)"""
        return await self._post_pair(
            session, self.accounts.accounts_receivable, self._cash_account(method),
            amount, f"Deferred refund paid for {ret.return_number}", self._metadata_for(ret, actor),
        )

    async def reverse_transaction(
        self,
        session: AsyncSession,
        transaction_id: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Tuple[LedgerEntry, LedgerEntry]:
        """冲销一对分录：写入借贷互换的新分录，原分录保持不变"""
        result = await session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.transaction_id == transaction_id)
            .order_by(LedgerEntry.id)
        )
        entries = list(result.scalars().all())
        if not entries:
            raise NotFoundError(code="LEDGER_TRANSACTION_NOT_FOUND", resource=f"Ledger transaction {transaction_id}")

        existing = await session.execute(
            select(func.count(LedgerEntry.id))
            .where(LedgerEntry.reverses_transaction_id == transaction_id)
        )
        if existing.scalar_one() > 0:
            raise InvalidStateError(
                code="ALREADY_REVERSED",
                detail=f"Ledger transaction {transaction_id} has already been reversed",
            )

        debit = next(entry for entry in entries if entry.debit_amount > ZERO)
        credit = next(entry for entry in entries if entry.credit_amount > ZERO)
        description = f"Reversal of {transaction_id}" + (f": {reason}" if reason else "")

        metadata = PostingMetadata(
            reference_type=debit.reference_type,
            reference_id=debit.reference_id,
            reference_number=debit.reference_number,
            customer_id=debit.customer_id,
            supplier_id=debit.supplier_id,
            actor=actor,
        )
        reversal = await self.create_double_entry(
            session,
            LedgerLeg(credit.account_code, credit.credit_amount, description),
            LedgerLeg(debit.account_code, debit.debit_amount, description),
            metadata,
            reverses_transaction_id=transaction_id,
        )
        self.logger.info("Reversed ledger transaction", transaction_id=transaction_id, reason=reason)
        return reversal

    async def get_account_balance(self, session: AsyncSession, account_code: str) -> Dict[str, Decimal]:
        """科目借贷合计与余额（借方 - 贷方）"""
        result = await session.execute(
            select(
                func.coalesce(func.sum(LedgerEntry.debit_amount), 0),
                func.coalesce(func.sum(LedgerEntry.credit_amount), 0),
            ).where(LedgerEntry.account_code == account_code)
        )
        debit, credit = result.one()
        debit = Decimal(str(debit))
        credit = Decimal(str(credit))
        return {"debit": debit, "credit": credit, "balance": debit - credit}

    async def get_reference_totals(self, session: AsyncSession, reference_id: str) -> Dict[str, Decimal]:
        result = await session.execute(
            select(
                func.coalesce(func.sum(LedgerEntry.debit_amount), 0),
                func.coalesce(func.sum(LedgerEntry.credit_amount), 0),
            ).where(LedgerEntry.reference_id == reference_id)
        )
        debit, credit = result.one()
        return {"debit": Decimal(str(debit)), "credit": Decimal(str(credit))}

    async def entries_for_reference(self, session: AsyncSession, reference_id: str) -> List[LedgerEntry]:
        result = await session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.reference_id == reference_id)
            .order_by(LedgerEntry.id)
        )
        return list(result.scalars().all())
