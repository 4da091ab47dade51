"""
总账过账测试
"""
from datetime import date
from decimal import Decimal

import pytest

from rf_core.services.ledger import LedgerLeg, PostingMetadata
from rf_core.utils.errors import InvalidStateError, NotFoundError, ValidationError

METADATA = PostingMetadata(
    reference_type="sale_return",
    reference_id="1",
    reference_number="RET-20260101-0001",
    transaction_date=date(2026, 1, 1),
    customer_id="C-1",
    actor="tester",
)


async def test_double_entry_writes_balanced_pair(runner, ledger):
    async def work(session):
        return await ledger.create_double_entry(
            session,
            LedgerLeg("4100", Decimal("70.00"), "Sales return"),
            LedgerLeg("1100", Decimal("70.00"), "Sales return"),
            METADATA,
        )

    debit, credit = await runner.run_in_transaction(work)

    assert debit.transaction_id == credit.transaction_id
    assert (debit.debit_amount, debit.credit_amount) == (Decimal("70.00"), Decimal("0"))
    assert (credit.debit_amount, credit.credit_amount) == (Decimal("0"), Decimal("70.00"))
    assert debit.customer_id == credit.customer_id == "C-1"
    assert debit.reference_number == "RET-20260101-0001"


@pytest.mark.parametrize("debit,credit", [
    (Decimal("10"), Decimal("9.99")),
    (Decimal("0"), Decimal("0")),
    (Decimal("-5"), Decimal("-5")),
])
async def test_invalid_pairs_rejected(runner, ledger, debit, credit):
    async def work(session):
        await ledger.create_double_entry(
            session, LedgerLeg("4100", debit), LedgerLeg("1100", credit), METADATA
        )

    with pytest.raises(ValidationError):
        await runner.run_in_transaction(work)

    async def read(session):
        return await ledger.entries_for_reference(session, "1")

    assert await runner.run_in_session(read) == []


async def test_reverse_transaction_posts_mirror_once(runner, ledger):
    async def post(session):
        debit, _ = await ledger.create_double_entry(
            session,
            LedgerLeg("1200", Decimal("60")),
            LedgerLeg("5000", Decimal("60")),
            METADATA,
        )
        return debit.transaction_id

    transaction_id = await runner.run_in_transaction(post)

    async def reverse(session):
        return await ledger.reverse_transaction(session, transaction_id, actor="tester", reason="posted twice")

    debit, credit = await runner.run_in_transaction(reverse)
    assert debit.account_code == "5000"
    assert credit.account_code == "1200"
    assert debit.reverses_transaction_id == transaction_id

    with pytest.raises(InvalidStateError):
        await runner.run_in_transaction(reverse)

    async def balances(session):
        return (
            await ledger.get_account_balance(session, "1200"),
            await ledger.get_reference_totals(session, "1"),
            await ledger.entries_for_reference(session, "1"),
        )

    inventory_balance, totals, entries = await runner.run_in_session(balances)
    assert inventory_balance["balance"] == Decimal("0")
    assert totals["debit"] == totals["credit"] == Decimal("120")
    assert len(entries) == 4


async def test_reverse_unknown_transaction(runner, ledger):
    async def reverse(session):
        await ledger.reverse_transaction(session, "missing")

    with pytest.raises(NotFoundError):
        await runner.run_in_transaction(reverse)
