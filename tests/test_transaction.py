"""
事务执行器测试
"""
from decimal import Decimal

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from rf_core.models.enums import MovementType
from rf_core.services.transaction import TransactionRunner, is_transient
from rf_core.utils.errors import (
    EligibilityError, PersistenceError, TransientStoreError
)


class _PgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def _locked():
    return OperationalError("UPDATE inventory_balances", {}, Exception("database is locked"))


def test_is_transient_classification():
    assert is_transient(DBAPIError("SELECT 1", {}, _PgError("could not serialize", "40001")))
    assert is_transient(DBAPIError("SELECT 1", {}, _PgError("deadlock detected", "40P01")))
    assert is_transient(_locked())
    assert not is_transient(DBAPIError("SELECT 1", {}, _PgError("unique violation", "23505")))
    assert not is_transient(ValueError("boom"))


async def test_retries_transient_conflict_then_commits(db_manager, inventory):
    runner = TransactionRunner(db_manager, max_retries=3, base_delay_ms=1)
    attempts = []

    async def work(session):
        attempts.append(1)
        await inventory.apply_movement(
            session,
            product_id="P-1",
            movement_type=MovementType.ADJUSTMENT,
            quantity=5,
        )
        if len(attempts) < 3:
            raise _locked()
        return "ok"

    assert await runner.run_in_transaction(work) == "ok"
    assert len(attempts) == 3

    # 前两次尝试都已回滚，只留下最后一次的写入
    async with db_manager.get_session() as session:
        balance = await inventory.get_balance(session, "P-1")
        movements = await inventory.list_movements(session, product_id="P-1")
    assert balance.quantity == 5
    assert len(movements) == 1


async def test_retries_exhausted_raises_transient_error(db_manager):
    runner = TransactionRunner(db_manager, max_retries=2, base_delay_ms=1)
    attempts = []

    async def work(session):
        attempts.append(1)
        raise _locked()

    with pytest.raises(TransientStoreError) as exc_info:
        await runner.run_in_transaction(work)

    assert len(attempts) == 3
    assert exc_info.value.retryable is True
    assert exc_info.value.extra["attempts"] == 3


async def test_domain_error_is_not_retried(db_manager, inventory):
    runner = TransactionRunner(db_manager, max_retries=5, base_delay_ms=1)
    attempts = []

    async def work(session):
        attempts.append(1)
        await inventory.apply_movement(
            session,
            product_id="P-2",
            movement_type=MovementType.ADJUSTMENT,
            quantity=3,
            unit_cost=Decimal("1"),
        )
        raise EligibilityError(code="OVER_RETURN", detail="too many")

    with pytest.raises(EligibilityError):
        await runner.run_in_transaction(work)

    assert len(attempts) == 1
    async with db_manager.get_session() as session:
        assert await inventory.get_balance(session, "P-2") is None


async def test_other_database_errors_become_persistence_error(db_manager):
    runner = TransactionRunner(db_manager, max_retries=5, base_delay_ms=1)
    attempts = []

    async def work(session):
        attempts.append(1)
        raise IntegrityError("INSERT INTO returns", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(PersistenceError):
        await runner.run_in_transaction(work)
    assert len(attempts) == 1


async def test_run_in_session_returns_value(db_manager):
    runner = TransactionRunner(db_manager)

    async def read(session):
        return 42

    assert await runner.run_in_session(read) == 42
