"""
退货编排服务
资格校验 → 金额计算 → 库存变动 → 总账过账 → 状态迁移 → 通知
除通知外全部在同一个数据库事务中完成
"""
import math
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession

from rf_core.models import Return, ReturnItem
from rf_core.models.base import utcnow
from rf_core.models.enums import (
    IMMEDIATE_REFUND_METHODS, PROCESSABLE_STATUSES,
    NotificationEvent, RefundMethod, ReturnOrigin, ReturnStatus,
)
from rf_core.models.schemas import (
    CreateReturnRequest, InspectionRecord, ReturnFilter, ReturnPage, ReturnRead,
    ReturnStats, ReturnTrendPoint, StatsPeriod,
)
from rf_core.utils.errors import (
    EligibilityError, InvalidStateError, NotFoundError, ValidationError
)
from rf_core.utils.logger import LogContext
from .base import BaseService
from .calculator import LineAmounts, RefundCalculator
from .collaborators import (
    NotificationSink, NullNotificationSink, OrderLookup, OrderSnapshot,
    PartyBalanceService, ProductLookup,
)
from .inventory import InventoryService
from .ledger import LedgerService
from .return_records import ReturnRecordStore
from .transaction import TransactionRunner

# 趋势查询最多回看 10 年
MAX_TREND_MONTHS = 120


def _parse(model, data, code: str):
    """把 dict 输入转换为请求模型，pydantic 校验错误转为 ValidationError"""
    if data is None or isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(
            code=code,
            detail=f"Invalid {model.__name__}: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e


class ReturnOrchestrator(BaseService):
    """
    退货编排器

    唯一一个跨库存、总账、退货单开启事务的组件；事务统一从 TransactionRunner 获取。
    协作方在进程启动时构造并注入。
    """

    def __init__(
        self,
        runner: TransactionRunner,
        order_lookup: OrderLookup,
        product_lookup: Optional[ProductLookup] = None,
        party_balances: Optional[PartyBalanceService] = None,
        notifier: Optional[NotificationSink] = None,
        calculator: Optional[RefundCalculator] = None,
        inventory: Optional[InventoryService] = None,
        ledger: Optional[LedgerService] = None,
        records: Optional[ReturnRecordStore] = None,
    ):
        settings = runner.db_manager.settings
        super().__init__(settings)
        self.runner = runner
        self.order_lookup = order_lookup
        self.product_lookup = product_lookup
        self.party_balances = party_balances
        self.notifier = notifier or NullNotificationSink()
        self.calculator = calculator or RefundCalculator()
        self.inventory = inventory or InventoryService(settings)
        self.ledger = ledger or LedgerService(settings)
        self.records = records or ReturnRecordStore(settings)

    # ========== 创建 ==========

    async def create_return(
        self,
        request: Union[CreateReturnRequest, Dict[str, Any]],
        actor: Optional[str] = None,
    ) -> ReturnRead:
        """
        创建退货单

        校验资格并计算金额后写入 pending 状态的退货单；
        未设置 defer 时在同一事务中立即处理库存与账务并迁移到 processed。

        Raises:
            EligibilityError: 原单不存在、超出退货期、超量退货
            ValidationError: 请求不合法
            InsufficientStockError: 采购退货库存不足
        """
        request = _parse(CreateReturnRequest, request, "INVALID_RETURN_REQUEST")

        with LogContext(actor_id=actor):
            order = await self._load_order(request)
            today = utcnow().date()
            self._check_window(order, today)
            await self._check_products(request)

            if (
                not request.defer
                and request.refund_method == RefundMethod.STORE_CREDIT
                and self.party_balances is None
            ):
                raise ValidationError(
                    code="STORE_CREDIT_UNAVAILABLE",
                    detail="Store credit refunds require a party balance service",
                )

            base_percent = (
                request.restocking_fee_percent
                if request.restocking_fee_percent is not None
                else Decimal(str(self.settings.restocking_fee_percent))
            )
            lines = self._build_lines(request, order, base_percent)
            net_refund = self.calculator.totals(lines).net_refund_amount
            if net_refund <= 0:
                raise ValidationError(
                    code="NET_REFUND_NOT_POSITIVE",
                    detail=f"Restocking fees leave nothing to refund (net {net_refund})",
                )
            requested = self._requested_per_line(request)

            async def work(session: AsyncSession) -> ReturnRead:
                await self.records.lock_order(session, request.origin, order.order_id)
                await self._check_over_return(session, request.origin, order, requested)

                ret = await self._persist(session, request, order, lines, base_percent, today, actor)
                if not request.defer:
                    await self._apply_effects(session, ret, actor)
                return ReturnRead.model_validate(ret)

            result = await self.runner.run_in_transaction(work)

            self.logger.info(
                "Return created",
                return_number=result.return_number,
                origin=result.origin.value,
                status=result.status.value,
                net_refund_amount=str(result.net_refund_amount),
                deferred=request.defer,
            )

        await self._notify(result, NotificationEvent.REQUESTED)
        if result.status == ReturnStatus.PROCESSED:
            await self._notify(result, NotificationEvent.COMPLETED)
        return result

    async def _load_order(self, request: CreateReturnRequest) -> OrderSnapshot:
        order = await self.order_lookup.get_order(request.order_id, request.origin)
        if order is None:
            raise EligibilityError(
                code="ORDER_NOT_FOUND",
                detail=f"Original {request.origin.value} order {request.order_id} not found",
            )

        if request.origin == ReturnOrigin.SALE and not order.customer_id:
            raise EligibilityError(code="MISSING_PARTY", detail="Sale order has no customer")
        if request.origin == ReturnOrigin.PURCHASE and not order.supplier_id:
            raise EligibilityError(code="MISSING_PARTY", detail="Purchase order has no supplier")
        return order

    def _check_window(self, order: OrderSnapshot, today: date) -> None:
        order_date = order.order_date
        if isinstance(order_date, datetime):
            order_date = order_date.date()
        elapsed = (today - order_date).days
        if elapsed > self.settings.return_window_days:
            raise EligibilityError(
                code="RETURN_WINDOW_EXPIRED",
                detail=(
                    f"Order {order.order_id} is {elapsed} days old; "
                    f"return window is {self.settings.return_window_days} days"
                ),
                order_date=order_date.isoformat(),
            )

    async def _check_products(self, request: CreateReturnRequest) -> None:
        if self.product_lookup is None:
            return
        for product_id in OrderedDict.fromkeys(item.product_id for item in request.items):
            if await self.product_lookup.get_product(product_id) is None:
                raise EligibilityError(code="PRODUCT_NOT_FOUND", detail=f"Product {product_id} not found")

    def _build_lines(
        self,
        request: CreateReturnRequest,
        order: OrderSnapshot,
        base_percent: Decimal,
    ) -> List[LineAmounts]:
        lines = []
        for item in request.items:
            order_line = order.line(item.order_line_id)
            if order_line is None:
                raise EligibilityError(
                    code="ORDER_LINE_NOT_FOUND",
                    detail=f"Line {item.order_line_id} not found on order {order.order_id}",
                )
            if order_line.product_id != item.product_id:
                raise ValidationError(
                    code="PRODUCT_MISMATCH",
                    detail=(
                        f"Product {item.product_id} does not match order line "
                        f"{item.order_line_id} ({order_line.product_id})"
                    ),
                )
            lines.append(self.calculator.line_amounts(
                order_line.unit_price, item.quantity, item.condition, item.reason, base_percent
            ))
        return lines

    @staticmethod
    def _requested_per_line(request: CreateReturnRequest) -> Dict[str, int]:
        requested: Dict[str, int] = OrderedDict()
        for item in request.items:
            requested[item.order_line_id] = requested.get(item.order_line_id, 0) + item.quantity
        return requested

    async def _check_over_return(
        self,
        session: AsyncSession,
        origin: ReturnOrigin,
        order: OrderSnapshot,
        requested: Dict[str, int],
    ) -> None:
        """已退数量 + 本次数量不得超过原单行数量"""
        returned = await self.records.returned_quantities(session, origin, order.order_id)
        for line_id, quantity in requested.items():
            order_line = order.line(line_id)
            already = returned.get(line_id, 0)
            if already + quantity > order_line.quantity:
                raise EligibilityError(
                    code="OVER_RETURN",
                    detail=(
                        f"Cannot return {quantity} of line {line_id}: "
                        f"{already} of {order_line.quantity} already returned"
                    ),
                    order_line_id=line_id,
                    remaining=max(order_line.quantity - already, 0),
                )

    async def _persist(
        self,
        session: AsyncSession,
        request: CreateReturnRequest,
        order: OrderSnapshot,
        lines: List[LineAmounts],
        base_percent: Decimal,
        today: date,
        actor: Optional[str],
    ) -> Return:
        totals = self.calculator.totals(lines)
        costs = []
        items = []
        for line_no, (item, amounts) in enumerate(zip(request.items, lines), start=1):
            order_line = order.line(item.order_line_id)
            unit_cost = self.calculator.unit_cost_for(order_line.unit_cost, order_line.unit_price)
            costs.append((unit_cost, item.quantity))
            items.append(ReturnItem(
                line_no=line_no,
                product_id=item.product_id,
                order_line_id=item.order_line_id,
                quantity=item.quantity,
                unit_price=Decimal(order_line.unit_price),
                unit_cost=unit_cost,
                condition=item.condition.value,
                action=item.action.value,
                reason=item.reason.value,
                reason_detail=item.reason_detail,
                restocking_fee_percent=amounts.fee_percent,
                restocking_fee=amounts.restocking_fee,
                refund_amount=amounts.refund_amount,
            ))

        now = utcnow()
        ret = Return(
            return_number=await self.records.next_return_number(session, today),
            origin=request.origin.value,
            order_id=order.order_id,
            order_number=order.order_number,
            customer_id=order.customer_id if request.origin == ReturnOrigin.SALE else None,
            supplier_id=order.supplier_id if request.origin == ReturnOrigin.PURCHASE else None,
            status=ReturnStatus.PENDING.value,
            refund_method=request.refund_method.value,
            restocking_fee_percent=Decimal(base_percent),
            total_refund_amount=totals.total_refund_amount,
            total_restocking_fee=totals.total_restocking_fee,
            net_refund_amount=totals.net_refund_amount,
            cogs_amount=self.calculator.cogs_amount(costs),
            inspection=self._dump_inspection(request.inspection, actor, now),
            refund_paid=False,
            requested_by=actor,
            notes=request.notes,
            return_date=today,
            created_at=now,
            updated_at=now,
            items=items,
        )
        return await self.records.add(session, ret)

    @staticmethod
    def _dump_inspection(
        inspection: Optional[InspectionRecord],
        actor: Optional[str],
        now: datetime,
    ) -> Optional[Dict[str, Any]]:
        if inspection is None:
            return None
        inspection = inspection.model_copy(update={
            "inspected_by": inspection.inspected_by or actor,
            "inspected_at": inspection.inspected_at or now,
        })
        return inspection.model_dump(mode="json")

    # ========== 处理 ==========

    async def _apply_effects(self, session: AsyncSession, ret: Return, actor: Optional[str]) -> Return:
        """库存、总账、退款、状态，在调用方的事务中执行"""
        self.records.transition(ret, ReturnStatus.PROCESSING, PROCESSABLE_STATUSES)
        await session.flush()

        resellable = True
        if ret.inspection:
            resellable = InspectionRecord.model_validate(ret.inspection).resellable

        await self.inventory.apply_return_movements(session, ret, resellable=resellable, actor=actor)
        await self.ledger.post_return(session, ret, actor)

        now = utcnow()
        method = RefundMethod(ret.refund_method)
        if method in IMMEDIATE_REFUND_METHODS:
            self._mark_refund_paid(ret, ret.net_refund_amount, method, now)
        elif method == RefundMethod.STORE_CREDIT:
            await self._record_store_credit(ret, actor)
            self._mark_refund_paid(ret, ret.net_refund_amount, method, now)

        self.records.transition(ret, ReturnStatus.PROCESSED, {ReturnStatus.PROCESSING})
        ret.processed_by = actor
        ret.processed_at = now
        await session.flush()
        return ret

    @staticmethod
    def _mark_refund_paid(
        ret: Return,
        amount: Decimal,
        method: RefundMethod,
        paid_at: datetime,
        reference: Optional[str] = None,
    ) -> None:
        ret.refund_paid = True
        ret.refund_paid_amount = amount
        ret.refund_paid_method = method.value
        ret.refund_paid_at = paid_at
        ret.refund_reference = reference or ret.return_number

    async def _record_store_credit(self, ret: Return, actor: Optional[str]) -> None:
        """往来余额记账在事务提交前调用，失败则整个退货回滚"""
        if self.party_balances is None:
            raise ValidationError(
                code="STORE_CREDIT_UNAVAILABLE",
                detail="Store credit refunds require a party balance service",
            )
        if ret.net_refund_amount <= 0:
            return
        await self.party_balances.record_refund(
            ret.party_id,
            ret.net_refund_amount,
            ret.order_id,
            {
                "return_id": ret.id,
                "return_number": ret.return_number,
                "origin": ret.origin,
                "idempotency_key": f"return:{ret.id}:store_credit",
                "actor": actor,
            },
        )

    async def _lock_for_update(self, session: AsyncSession, return_id: int) -> Return:
        """先锁原订单再锁退货单，与创建流程的加锁顺序一致"""
        ret = await self.records.get(session, return_id)
        if ret is None:
            raise NotFoundError(code="RETURN_NOT_FOUND", resource=f"Return {return_id}")
        await self.records.lock_order(session, ret.origin, ret.order_id)
        return await self.records.get(session, return_id, for_update=True)

    async def process_return(self, return_id: int, actor: Optional[str] = None) -> ReturnRead:
        """
        处理已登记（延期/已审批/已质检）的退货单

        Raises:
            InvalidStateError: 当前状态不是 pending / inspected / approved
        """
        async def work(session: AsyncSession) -> ReturnRead:
            ret = await self._lock_for_update(session, return_id)
            await self._apply_effects(session, ret, actor)
            return ReturnRead.model_validate(ret)

        with LogContext(actor_id=actor):
            result = await self.runner.run_in_transaction(work)
            self.logger.info(
                "Return processed",
                return_number=result.return_number,
                net_refund_amount=str(result.net_refund_amount),
                refund_paid=result.refund_paid,
            )

        await self._notify(result, NotificationEvent.COMPLETED)
        return result

    # ========== 状态迁移 ==========

    async def _change_status(
        self,
        return_id: int,
        new_status: ReturnStatus,
        allowed_from,
        actor: Optional[str],
        **fields,
    ) -> ReturnRead:
        async def work(session: AsyncSession) -> ReturnRead:
            ret = await self.records.get(session, return_id, for_update=True)
            if ret is None:
                raise NotFoundError(code="RETURN_NOT_FOUND", resource=f"Return {return_id}")
            self.records.transition(ret, new_status, allowed_from)
            for key, value in fields.items():
                setattr(ret, key, value)
            await session.flush()
            return ReturnRead.model_validate(ret)

        with LogContext(actor_id=actor):
            return await self.runner.run_in_transaction(work)

    async def approve_return(self, return_id: int, actor: Optional[str] = None) -> ReturnRead:
        result = await self._change_status(
            return_id, ReturnStatus.APPROVED, {ReturnStatus.PENDING, ReturnStatus.INSPECTED}, actor,
            approved_by=actor,
        )
        await self._notify(result, NotificationEvent.APPROVED)
        return result

    async def reject_return(
        self,
        return_id: int,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ReturnRead:
        result = await self._change_status(
            return_id, ReturnStatus.REJECTED, {ReturnStatus.PENDING, ReturnStatus.INSPECTED}, actor,
            rejected_by=actor, status_reason=reason,
        )
        await self._notify(result, NotificationEvent.REJECTED)
        return result

    async def cancel_return(
        self,
        return_id: int,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ReturnRead:
        """只能取消 pending 的退货单"""
        return await self._change_status(
            return_id, ReturnStatus.CANCELLED, {ReturnStatus.PENDING}, actor,
            status_reason=reason,
        )

    async def record_inspection(
        self,
        return_id: int,
        inspection: Union[InspectionRecord, Dict[str, Any]],
        actor: Optional[str] = None,
    ) -> ReturnRead:
        """登记质检结果，pending/approved → inspected"""
        inspection = _parse(InspectionRecord, inspection, "INVALID_INSPECTION")
        return await self._change_status(
            return_id, ReturnStatus.INSPECTED, {ReturnStatus.PENDING, ReturnStatus.APPROVED}, actor,
            inspection=self._dump_inspection(inspection, actor, utcnow()),
        )

    async def delete_return(self, return_id: int, actor: Optional[str] = None) -> None:
        """软删除，只允许 pending / cancelled"""
        async def work(session: AsyncSession) -> None:
            ret = await self.records.get(session, return_id, for_update=True)
            if ret is None:
                raise NotFoundError(code="RETURN_NOT_FOUND", resource=f"Return {return_id}")
            if ret.status not in (ReturnStatus.PENDING.value, ReturnStatus.CANCELLED.value):
                raise InvalidStateError(
                    code="RETURN_NOT_DELETABLE",
                    detail=f"Return {ret.return_number} in status {ret.status} cannot be deleted",
                    current_status=ret.status,
                )
            now = utcnow()
            ret.deleted_at = now
            ret.updated_at = now
            await session.flush()
            self.logger.info("Return deleted", return_number=ret.return_number, actor=actor)

        await self.runner.run_in_transaction(work)

    # ========== 延期退款 ==========

    async def issue_deferred_refund(
        self,
        return_id: int,
        amount: Decimal,
        method: Union[RefundMethod, str] = RefundMethod.CASH,
        actor: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> ReturnRead:
        """
        延期退款实付

        只适用于已处理、退款方式为 deferred 的销售退货；
        写入 借 应收账款 / 贷 现金(银行) 并记录实付信息。
        """
        try:
            amount = Decimal(str(amount))
            method = RefundMethod(method)
        except (ArithmeticError, ValueError) as e:
            raise ValidationError(code="INVALID_REFUND", detail=str(e)) from e

        if amount <= 0:
            raise ValidationError(code="INVALID_REFUND_AMOUNT", detail="Refund amount must be positive")
        if method not in IMMEDIATE_REFUND_METHODS:
            raise ValidationError(
                code="INVALID_REFUND_METHOD",
                detail=f"Deferred refunds must be paid by cash or bank, got {method.value}",
            )

        async def work(session: AsyncSession) -> ReturnRead:
            ret = await self.records.get(session, return_id, for_update=True)
            if ret is None:
                raise NotFoundError(code="RETURN_NOT_FOUND", resource=f"Return {return_id}")
            if ret.origin != ReturnOrigin.SALE.value:
                raise InvalidStateError(
                    code="DEFERRED_REFUND_NOT_ALLOWED",
                    detail="Deferred refunds only apply to sale returns",
                    current_status=ret.status,
                )
            if ret.status != ReturnStatus.PROCESSED.value:
                raise InvalidStateError(
                    code="RETURN_NOT_PROCESSED",
                    detail=f"Return {ret.return_number} has not been processed",
                    current_status=ret.status,
                )
            if ret.refund_method != RefundMethod.DEFERRED.value:
                raise InvalidStateError(
                    code="REFUND_NOT_DEFERRED",
                    detail=f"Return {ret.return_number} refund method is {ret.refund_method}",
                    current_status=ret.status,
                )
            if ret.refund_paid:
                raise InvalidStateError(
                    code="REFUND_ALREADY_PAID",
                    detail=f"Refund for {ret.return_number} has already been paid",
                    current_status=ret.status,
                )
            if amount > ret.net_refund_amount:
                raise ValidationError(
                    code="REFUND_EXCEEDS_AMOUNT",
                    detail=f"Refund {amount} exceeds computed refund {ret.net_refund_amount}",
                )

            await self.ledger.post_deferred_refund(session, ret, amount, method, actor)
            now = utcnow()
            self._mark_refund_paid(ret, amount, method, now, reference)
            ret.updated_at = now
            await session.flush()
            return ReturnRead.model_validate(ret)

        with LogContext(actor_id=actor):
            result = await self.runner.run_in_transaction(work)
            self.logger.info(
                "Deferred refund issued",
                return_number=result.return_number,
                amount=str(amount),
                method=method.value,
            )
        return result

    # ========== 查询 ==========

    async def get_return_by_id(self, return_id: int) -> ReturnRead:
        async def op(session: AsyncSession) -> ReturnRead:
            ret = await self.records.get(session, return_id)
            if ret is None:
                raise NotFoundError(code="RETURN_NOT_FOUND", resource=f"Return {return_id}")
            return ReturnRead.model_validate(ret)

        return await self.runner.run_in_session(op)

    async def get_return_by_number(self, return_number: str) -> ReturnRead:
        async def op(session: AsyncSession) -> ReturnRead:
            ret = await self.records.get_by_number(session, return_number)
            if ret is None:
                raise NotFoundError(code="RETURN_NOT_FOUND", resource=f"Return {return_number}")
            return ReturnRead.model_validate(ret)

        return await self.runner.run_in_session(op)

    async def list_returns(
        self,
        filters: Union[ReturnFilter, Dict[str, Any], None] = None,
    ) -> ReturnPage:
        filters = _parse(ReturnFilter, filters, "INVALID_FILTER") or ReturnFilter()

        async def op(session: AsyncSession) -> ReturnPage:
            rows, total = await self.records.list_returns(session, filters)
            return ReturnPage(
                items=[ReturnRead.model_validate(row) for row in rows],
                total=total,
                page=filters.page,
                limit=filters.limit,
                pages=math.ceil(total / filters.limit) if total else 0,
            )

        return await self.runner.run_in_session(op)

    async def get_return_stats(
        self,
        period: Union[StatsPeriod, Dict[str, Any], None] = None,
    ) -> ReturnStats:
        period = _parse(StatsPeriod, period, "INVALID_PERIOD")

        async def op(session: AsyncSession) -> ReturnStats:
            return await self.records.stats(session, period)

        return await self.runner.run_in_session(op)

    async def get_return_trends(self, months: int = 12) -> List[ReturnTrendPoint]:
        if not 1 <= months <= MAX_TREND_MONTHS:
            raise ValidationError(
                code="INVALID_PERIOD",
                detail=f"months must be between 1 and {MAX_TREND_MONTHS}",
            )

        async def op(session: AsyncSession) -> List[ReturnTrendPoint]:
            return await self.records.trends(session, months)

        return await self.runner.run_in_session(op)

    # ========== 通知 ==========

    async def _notify(self, ret: ReturnRead, event: NotificationEvent) -> None:
        """事务提交后发送；失败只记录日志，不影响已提交的退货"""
        if not self.settings.notifications_enabled:
            return
        try:
            await self.notifier.notify(ret, event)
        except Exception:
            self.logger.error(
                "Return notification failed",
                return_number=ret.return_number,
                event=event.value,
                exc_info=True,
            )
