"""
库存服务
库存余额按带符号增量更新（下限钳制为 0），每次变动写一条只追加的库存流水
"""
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rf_core.database import dialect_insert
from rf_core.models import InventoryBalance, StockMovement, Return
from rf_core.models.base import utcnow
from rf_core.models.enums import MovementType, QUARANTINE_MOVEMENTS, ReturnOrigin
from rf_core.utils.errors import InsufficientStockError, ValidationError
from .base import BaseService

RETURN_REFERENCE_TYPE = "return"


class InventoryService(BaseService):
    """库存服务（余额表 + 库存流水）"""

    async def get_balance(
        self,
        session: AsyncSession,
        product_id: str,
        for_update: bool = False
    ) -> Optional[InventoryBalance]:
        stmt = select(InventoryBalance).where(InventoryBalance.product_id == product_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _ensure_balance(self, session: AsyncSession, product_id: str) -> InventoryBalance:
        """首次变动时以 0 为基线懒创建余额行，并加行锁返回"""
        insert = dialect_insert(session)
        stmt = insert(InventoryBalance).values(
            product_id=product_id,
            quantity=0,
            quantity_reserved=0,
            quantity_quarantine=0,
            updated_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["product_id"])
        await session.execute(stmt)
        return await self.get_balance(session, product_id, for_update=True)

    async def apply_movement(
        self,
        session: AsyncSession,
        *,
        product_id: str,
        movement_type: MovementType,
        quantity: int,
        unit_cost: Decimal = Decimal("0"),
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_number: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> StockMovement:
        """
        写入一条库存流水并把带符号数量应用到余额

        隔离类流水只影响 quantity_quarantine，其余影响可售数量 quantity；
        结果小于 0 时钳制为 0。相同 idempotency_key 的流水不会重复应用。
        """
        if quantity == 0:
            raise ValidationError(code="ZERO_MOVEMENT", detail="Movement quantity cannot be zero")

        movement_type = MovementType(movement_type)

        if idempotency_key:
            existing = await session.execute(
                select(StockMovement).where(StockMovement.idempotency_key == idempotency_key)
            )
            movement = existing.scalar_one_or_none()
            if movement is not None:
                self.logger.info(
                    "Stock movement already applied",
                    idempotency_key=idempotency_key,
                    movement_id=movement.id,
                )
                return movement

        balance = await self._ensure_balance(session, product_id)

        bucket = "quantity_quarantine" if movement_type in QUARANTINE_MOVEMENTS else "quantity"
        previous = getattr(balance, bucket)
        new = max(0, previous + quantity)

        unit_cost = Decimal(unit_cost)
        movement = StockMovement(
            product_id=product_id,
            movement_type=movement_type.value,
            quantity=quantity,
            unit_cost=unit_cost,
            total_value=unit_cost * abs(quantity),
            previous_stock=previous,
            new_stock=new,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            idempotency_key=idempotency_key,
            created_by=actor,
            created_at=utcnow(),
        )
        session.add(movement)
        await session.flush()

        now = utcnow()
        setattr(balance, bucket, new)
        balance.last_movement_id = movement.id
        balance.last_movement_at = now
        balance.updated_at = now
        await session.flush()

        self.logger.debug(
            "Applied stock movement",
            product_id=product_id,
            movement_type=movement_type.value,
            quantity=quantity,
            previous=previous,
            new=new,
        )
        return movement

    async def require_available(self, session: AsyncSession, product_id: str, quantity: int) -> InventoryBalance:
        """锁定余额行并确认可售数量足够"""
        balance = await self.get_balance(session, product_id, for_update=True)
        available = balance.quantity if balance else 0
        if available < quantity:
            raise InsufficientStockError(product_id=product_id, available=available, requested=quantity)
        return balance

    async def apply_return_movements(
        self,
        session: AsyncSession,
        ret: Return,
        resellable: bool = True,
        actor: Optional[str] = None,
    ) -> List[StockMovement]:
        """
        按退货单写库存流水

        采购退货：先校验全部商品的可售数量，再逐行 return_out 扣减；
        销售退货：可再售 return_in 增加可售数量，否则 return_quarantine 只增加隔离数量。
        """
        is_purchase = ret.origin == ReturnOrigin.PURCHASE.value

        if is_purchase:
            requested: Dict[str, int] = OrderedDict()
            for item in ret.items:
                requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
            for product_id, qty in requested.items():
                await self.require_available(session, product_id, qty)
            movement_type = MovementType.RETURN_OUT
        elif resellable:
            movement_type = MovementType.RETURN_IN
        else:
            movement_type = MovementType.RETURN_QUARANTINE

        movements = []
        for item in ret.items:
            signed = -item.quantity if is_purchase else item.quantity
            movement = await self.apply_movement(
                session,
                product_id=item.product_id,
                movement_type=movement_type,
                quantity=signed,
                unit_cost=item.unit_cost,
                reference_type=RETURN_REFERENCE_TYPE,
                reference_id=str(ret.id),
                reference_number=ret.return_number,
                idempotency_key=f"return:{ret.id}:item:{item.id}:{movement_type.value}",
                actor=actor,
            )
            movements.append(movement)

        self.logger.info(
            "Applied return inventory movements",
            return_number=ret.return_number,
            movement_type=movement_type.value,
            count=len(movements),
        )
        return movements

    async def recompute_balance(self, session: AsyncSession, product_id: str) -> InventoryBalance:
        """由库存流水重算余额（按写入顺序回放，逐步钳制）"""
        balance = await self._ensure_balance(session, product_id)

        result = await session.execute(
            select(StockMovement)
            .where(StockMovement.product_id == product_id)
            .order_by(StockMovement.id)
        )
        movements = list(result.scalars().all())

        sellable = 0
        quarantine = 0
        for movement in movements:
            if MovementType(movement.movement_type) in QUARANTINE_MOVEMENTS:
                quarantine = max(0, quarantine + movement.quantity)
            else:
                sellable = max(0, sellable + movement.quantity)

        if (balance.quantity, balance.quantity_quarantine) != (sellable, quarantine):
            self.logger.warning(
                "Inventory balance drift corrected",
                product_id=product_id,
                stored_quantity=balance.quantity,
                rebuilt_quantity=sellable,
                stored_quarantine=balance.quantity_quarantine,
                rebuilt_quarantine=quarantine,
            )

        balance.quantity = sellable
        balance.quantity_quarantine = quarantine
        if movements:
            balance.last_movement_id = movements[-1].id
            balance.last_movement_at = movements[-1].created_at
        balance.updated_at = utcnow()
        await session.flush()
        return balance

    async def list_movements(
        self,
        session: AsyncSession,
        product_id: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> List[StockMovement]:
        stmt = select(StockMovement)
        if product_id:
            stmt = stmt.where(StockMovement.product_id == product_id)
        if reference_id:
            stmt = stmt.where(
                StockMovement.reference_type == RETURN_REFERENCE_TYPE,
                StockMovement.reference_id == reference_id,
            )
        result = await session.execute(stmt.order_by(StockMovement.id))
        return list(result.scalars().all())
