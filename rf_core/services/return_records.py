"""
退货单存储
退货聚合的持久化、按天递增的单号、原单已退数量统计
"""
from collections import defaultdict
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rf_core.database import dialect_insert
from rf_core.models import Return, ReturnItem, ReturnOrderLock, ReturnSequence
from rf_core.models.base import utcnow
from rf_core.models.enums import EXCLUDED_FROM_TALLY, ReturnOrigin, ReturnStatus
from rf_core.models.schemas import (
    ReturnFilter, ReturnStats, ReturnTrendPoint, StatsPeriod
)
from rf_core.utils.errors import InvalidStateError
from .base import BaseService

NUMBER_PREFIX = "RET"
MONEY = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(MONEY, ROUND_HALF_UP)


def format_return_number(day: date, sequence: int) -> str:
    """RET-YYYYMMDD-NNNN"""
    return f"{NUMBER_PREFIX}-{day.strftime('%Y%m%d')}-{sequence:04d}"


class ReturnRecordStore(BaseService):
    """退货单存储"""

    async def lock_order(self, session: AsyncSession, origin: ReturnOrigin, order_id: str) -> None:
        """
        对原订单加锁

        在事务开始时 upsert 一行并递增版本号，行锁持有到事务结束，
        同一原单的退货因此串行执行，已退数量的检查不会并发穿透。
        """
        insert = dialect_insert(session)
        stmt = insert(ReturnOrderLock).values(
            origin=ReturnOrigin(origin).value,
            order_id=order_id,
            lock_version=1,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["origin", "order_id"],
            set_={
                "lock_version": ReturnOrderLock.__table__.c.lock_version + 1,
                "updated_at": utcnow(),
            },
        )
        await session.execute(stmt)

    async def next_return_number(self, session: AsyncSession, today: Optional[date] = None) -> str:
        """分配当天的下一个退货单号（每日从 0001 开始）"""
        today = today or utcnow().date()
        day = today.strftime("%Y%m%d")

        insert = dialect_insert(session)
        stmt = insert(ReturnSequence).values(day=day, last_value=1).on_conflict_do_update(
            index_elements=["day"],
            set_={"last_value": ReturnSequence.__table__.c.last_value + 1},
        )
        await session.execute(stmt)

        result = await session.execute(
            select(ReturnSequence.last_value).where(ReturnSequence.day == day)
        )
        return format_return_number(today, result.scalar_one())

    async def add(self, session: AsyncSession, ret: Return) -> Return:
        session.add(ret)
        await session.flush()
        return ret

    async def get(self, session: AsyncSession, return_id: int, for_update: bool = False) -> Optional[Return]:
        """按 ID 获取（不含已删除）"""
        stmt = select(Return).where(Return.id == return_id, Return.deleted_at.is_(None))
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_number(self, session: AsyncSession, return_number: str) -> Optional[Return]:
        result = await session.execute(
            select(Return).where(Return.return_number == return_number, Return.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def returned_quantities(
        self,
        session: AsyncSession,
        origin: ReturnOrigin,
        order_id: str,
    ) -> Dict[str, int]:
        """原单各行已退数量（不含驳回、取消、已删除的退货）"""
        conditions = [
            Return.origin == ReturnOrigin(origin).value,
            Return.order_id == order_id,
            Return.status.notin_([status.value for status in EXCLUDED_FROM_TALLY]),
            Return.deleted_at.is_(None),
        ]

        result = await session.execute(
            select(ReturnItem.order_line_id, func.sum(ReturnItem.quantity))
            .join(Return, ReturnItem.return_id == Return.id)
            .where(and_(*conditions))
            .group_by(ReturnItem.order_line_id)
        )
        return {line_id: int(quantity or 0) for line_id, quantity in result.all()}

    def transition(
        self,
        ret: Return,
        new_status: ReturnStatus,
        allowed_from: Iterable[ReturnStatus],
    ) -> Return:
        """状态迁移；当前状态不在 allowed_from 中时抛出 InvalidStateError"""
        allowed = {ReturnStatus(status).value for status in allowed_from}
        if ret.status not in allowed:
            raise InvalidStateError(
                code="INVALID_RETURN_STATUS",
                detail=(
                    f"Return {ret.return_number} cannot move to {ReturnStatus(new_status).value} "
                    f"from {ret.status}"
                ),
                current_status=ret.status,
            )
        self.logger.info(
            "Return status changed",
            return_number=ret.return_number,
            from_status=ret.status,
            to_status=ReturnStatus(new_status).value,
        )
        ret.status = ReturnStatus(new_status).value
        ret.updated_at = utcnow()
        return ret

    def _filter_conditions(self, filters: ReturnFilter) -> List:
        conditions = [Return.deleted_at.is_(None)]
        if filters.status:
            conditions.append(Return.status == filters.status.value)
        if filters.origin:
            conditions.append(Return.origin == filters.origin.value)
        if filters.customer_id:
            conditions.append(Return.customer_id == filters.customer_id)
        if filters.supplier_id:
            conditions.append(Return.supplier_id == filters.supplier_id)
        if filters.order_id:
            conditions.append(Return.order_id == filters.order_id)
        if filters.search:
            conditions.append(Return.return_number.startswith(filters.search, autoescape=True))
        if filters.date_from:
            conditions.append(Return.return_date >= filters.date_from)
        if filters.date_to:
            conditions.append(Return.return_date <= filters.date_to)
        return conditions

    async def list_returns(self, session: AsyncSession, filters: ReturnFilter) -> Tuple[List[Return], int]:
        """分页查询，按创建时间倒序"""
        conditions = self._filter_conditions(filters)

        total_result = await session.execute(
            select(func.count(Return.id)).where(and_(*conditions))
        )
        total = total_result.scalar_one()

        result = await session.execute(
            select(Return)
            .where(and_(*conditions))
            .order_by(Return.created_at.desc(), Return.id.desc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        return list(result.scalars().all()), total

    def _period_conditions(self, period: Optional[StatsPeriod]) -> List:
        conditions = [Return.deleted_at.is_(None)]
        if period and period.start_date:
            conditions.append(Return.return_date >= period.start_date)
        if period and period.end_date:
            conditions.append(Return.return_date <= period.end_date)
        return conditions

    async def stats(self, session: AsyncSession, period: Optional[StatsPeriod] = None) -> ReturnStats:
        """区间统计"""
        conditions = self._period_conditions(period)

        result = await session.execute(
            select(
                Return.status,
                Return.origin,
                func.count(Return.id),
                func.coalesce(func.sum(Return.total_refund_amount), 0),
                func.coalesce(func.sum(Return.total_restocking_fee), 0),
                func.coalesce(func.sum(Return.net_refund_amount), 0),
            )
            .where(and_(*conditions))
            .group_by(Return.status, Return.origin)
        )

        status_breakdown: Dict[str, int] = defaultdict(int)
        origin_breakdown: Dict[str, int] = defaultdict(int)
        total_returns = 0
        total_refund = Decimal("0")
        total_fee = Decimal("0")
        net_refund = Decimal("0")
        for status, origin, count, refund, fee, net in result.all():
            status_breakdown[status] += count
            origin_breakdown[origin] += count
            total_returns += count
            total_refund += Decimal(str(refund))
            total_fee += Decimal(str(fee))
            net_refund += Decimal(str(net))

        # 处理时长在应用侧计算，避免依赖数据库的日期函数
        processed = await session.execute(
            select(Return.created_at, Return.processed_at).where(
                and_(*conditions),
                Return.status == ReturnStatus.PROCESSED.value,
                Return.processed_at.is_not(None),
            )
        )
        durations = [
            (processed_at - created_at).total_seconds() / 86400
            for created_at, processed_at in processed.all()
        ]
        average_days = round(sum(durations) / len(durations), 2) if durations else 0.0

        average_refund = _money(total_refund / total_returns) if total_returns else Decimal("0.00")

        return ReturnStats(
            total_returns=total_returns,
            pending_returns=status_breakdown.get(ReturnStatus.PENDING.value, 0),
            total_refund_amount=_money(total_refund),
            total_restocking_fee=_money(total_fee),
            net_refund_amount=_money(net_refund),
            average_refund_amount=average_refund,
            average_processing_days=average_days,
            status_breakdown=dict(status_breakdown),
            origin_breakdown=dict(origin_breakdown),
        )

    async def trends(self, session: AsyncSession, months: int = 12, today: Optional[date] = None) -> List[ReturnTrendPoint]:
        """最近 months 个月的月度趋势（不含已取消）"""
        today = today or utcnow().date()
        start_month_index = today.year * 12 + (today.month - 1) - (months - 1)
        start = date(start_month_index // 12, start_month_index % 12 + 1, 1)

        result = await session.execute(
            select(Return.return_date, Return.net_refund_amount).where(
                Return.deleted_at.is_(None),
                Return.status != ReturnStatus.CANCELLED.value,
                Return.return_date >= start,
            )
        )

        buckets: Dict[str, List[Decimal]] = defaultdict(list)
        for return_date, amount in result.all():
            buckets[return_date.strftime("%Y-%m")].append(Decimal(str(amount)))

        points = []
        for period in sorted(buckets):
            amounts = buckets[period]
            total = sum(amounts, Decimal("0"))
            points.append(ReturnTrendPoint(
                period=period,
                total_returns=len(amounts),
                total_refund_amount=_money(total),
                average_refund_amount=_money(total / len(amounts)),
            ))
        return points
