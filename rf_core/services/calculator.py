"""
退款计算器 - 重新上架费、退款金额、成本冲回
纯计算，不访问数据库
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from rf_core.models.enums import ItemCondition, ReturnReason, STORE_FAULT_REASONS

MONEY = Decimal("0.01")
PERCENT = Decimal("0.0001")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class LineAmounts:
    """单行计算结果"""
    fee_percent: Decimal
    gross_amount: Decimal
    restocking_fee: Decimal
    refund_amount: Decimal


@dataclass(frozen=True)
class ReturnTotals:
    """退货单汇总"""
    total_refund_amount: Decimal
    total_restocking_fee: Decimal
    net_refund_amount: Decimal


class RefundCalculator:
    """退款计算器"""

    # 成色系数
    CONDITION_MULTIPLIERS = {
        ItemCondition.NEW: Decimal("0.5"),
        ItemCondition.LIKE_NEW: Decimal("0.5"),
        ItemCondition.GOOD: Decimal("1.0"),
        ItemCondition.FAIR: Decimal("1.5"),
        ItemCondition.POOR: Decimal("2.0"),
        ItemCondition.DAMAGED: Decimal("2.0"),
    }

    # 非商家责任原因的附加系数
    REASON_MULTIPLIERS = {
        ReturnReason.CHANGED_MIND: Decimal("1.5"),
    }

    MAX_FEE_PERCENT = HUNDRED

    def condition_multiplier(self, condition: ItemCondition) -> Decimal:
        return self.CONDITION_MULTIPLIERS.get(ItemCondition(condition), Decimal("1.0"))

    def restocking_fee_percent(
        self,
        condition: ItemCondition,
        reason: ReturnReason,
        base_percent: Decimal,
    ) -> Decimal:
        """
        计算重新上架费率(%)

        base × 成色系数；商家责任原因（次品、错发、运输损坏）费率为 0；
        改变主意再 × 1.5；上限 100%。
        """
        reason = ReturnReason(reason)
        if reason in STORE_FAULT_REASONS:
            return Decimal("0")

        percent = Decimal(base_percent or 0) * self.condition_multiplier(condition)
        percent *= self.REASON_MULTIPLIERS.get(reason, Decimal("1"))

        return min(percent, self.MAX_FEE_PERCENT).quantize(PERCENT, ROUND_HALF_UP)

    def line_amounts(
        self,
        unit_price: Decimal,
        quantity: int,
        condition: ItemCondition,
        reason: ReturnReason,
        base_percent: Decimal,
    ) -> LineAmounts:
        """计算单行的重新上架费与退款金额"""
        fee_percent = self.restocking_fee_percent(condition, reason, base_percent)
        gross = (Decimal(unit_price) * quantity).quantize(MONEY, ROUND_HALF_UP)
        fee = (gross * fee_percent / HUNDRED).quantize(MONEY, ROUND_HALF_UP)
        return LineAmounts(
            fee_percent=fee_percent,
            gross_amount=gross,
            restocking_fee=fee,
            refund_amount=gross - fee,
        )

    def totals(self, lines: Iterable[LineAmounts]) -> ReturnTotals:
        """汇总：净退款 = Σ退款金额 − Σ重新上架费"""
        total_refund = Decimal("0")
        total_fee = Decimal("0")
        for line in lines:
            total_refund += line.refund_amount
            total_fee += line.restocking_fee
        return ReturnTotals(
            total_refund_amount=total_refund,
            total_restocking_fee=total_fee,
            net_refund_amount=total_refund - total_fee,
        )

    def cogs_amount(self, lines: Sequence[tuple]) -> Decimal:
        """成本冲回金额：Σ 原始单位成本 × 数量，lines 为 (unit_cost, quantity)"""
        total = sum(
            (Decimal(unit_cost) * quantity for unit_cost, quantity in lines),
            Decimal("0"),
        )
        return total.quantize(MONEY, ROUND_HALF_UP)

    @staticmethod
    def unit_cost_for(unit_cost: Optional[Decimal], unit_price: Decimal) -> Decimal:
        """原单行无成本时回退到单价"""
        if unit_cost is None:
            return Decimal(unit_price)
        return Decimal(unit_cost)
