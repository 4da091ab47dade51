"""
库存服务测试
"""
from decimal import Decimal

import pytest

from rf_core.models.enums import MovementType
from rf_core.utils.errors import InsufficientStockError, ValidationError


async def test_first_movement_creates_balance(runner, inventory):
    async def work(session):
        return await inventory.apply_movement(
            session,
            product_id="P-10",
            movement_type=MovementType.RETURN_IN,
            quantity=4,
            unit_cost=Decimal("2.50"),
        )

    movement = await runner.run_in_transaction(work)

    assert movement.previous_stock == 0
    assert movement.new_stock == 4
    assert movement.total_value == Decimal("10.00")

    async def read(session):
        return await inventory.get_balance(session, "P-10")

    balance = await runner.run_in_session(read)
    assert balance.quantity == 4
    assert balance.quantity_quarantine == 0
    assert balance.last_movement_id == movement.id


async def test_negative_delta_is_clamped_at_zero(runner, inventory, seed_stock):
    await seed_stock("P-11", 2)

    async def work(session):
        return await inventory.apply_movement(
            session,
            product_id="P-11",
            movement_type=MovementType.ADJUSTMENT,
            quantity=-5,
        )

    movement = await runner.run_in_transaction(work)

    assert movement.quantity == -5
    assert movement.previous_stock == 2
    assert movement.new_stock == 0


async def test_quarantine_movement_leaves_sellable_untouched(runner, inventory, seed_stock):
    await seed_stock("P-12", 3)

    async def work(session):
        await inventory.apply_movement(
            session,
            product_id="P-12",
            movement_type=MovementType.RETURN_QUARANTINE,
            quantity=2,
        )
        return await inventory.get_balance(session, "P-12")

    balance = await runner.run_in_transaction(work)
    assert balance.quantity == 3
    assert balance.quantity_quarantine == 2


async def test_idempotency_key_applies_once(runner, inventory):
    async def work(session):
        first = await inventory.apply_movement(
            session,
            product_id="P-13",
            movement_type=MovementType.RETURN_IN,
            quantity=1,
            idempotency_key="return:1:item:1:return_in",
        )
        second = await inventory.apply_movement(
            session,
            product_id="P-13",
            movement_type=MovementType.RETURN_IN,
            quantity=1,
            idempotency_key="return:1:item:1:return_in",
        )
        balance = await inventory.get_balance(session, "P-13")
        return first, second, balance

    first, second, balance = await runner.run_in_transaction(work)
    assert first.id == second.id
    assert balance.quantity == 1


async def test_zero_quantity_rejected(runner, inventory):
    async def work(session):
        await inventory.apply_movement(
            session,
            product_id="P-14",
            movement_type=MovementType.ADJUSTMENT,
            quantity=0,
        )

    with pytest.raises(ValidationError):
        await runner.run_in_transaction(work)


async def test_require_available(runner, inventory, seed_stock):
    await seed_stock("P-15", 4)

    async def work(session):
        await inventory.require_available(session, "P-15", 10)

    with pytest.raises(InsufficientStockError) as exc_info:
        await runner.run_in_transaction(work)

    assert exc_info.value.available == 4
    assert exc_info.value.requested == 10
    assert exc_info.value.status == 409


async def test_recompute_balance_from_movement_log(runner, inventory, seed_stock):
    await seed_stock("P-16", 5)

    async def work(session):
        await inventory.apply_movement(
            session, product_id="P-16", movement_type=MovementType.SALE, quantity=-2
        )
        await inventory.apply_movement(
            session, product_id="P-16", movement_type=MovementType.RETURN_QUARANTINE, quantity=1
        )
        balance = await inventory.get_balance(session, "P-16", for_update=True)
        balance.quantity = 99
        balance.quantity_quarantine = 0
        await session.flush()

        return await inventory.recompute_balance(session, "P-16")

    balance = await runner.run_in_transaction(work)
    assert balance.quantity == 3
    assert balance.quantity_quarantine == 1
