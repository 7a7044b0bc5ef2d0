"""
Tests for LedgerService.

Tests the atomic balance upsert, conditional reservation, and the
best-effort transaction log.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from app.db.models import Transaction
from app.exceptions import PersistenceError
from app.models.api import BalanceOperation, TransactionStatus, TransactionType
from app.services.ledger import LedgerService


def compiled_sql(db_session) -> str:
    """SQL of the first statement passed to execute."""
    stmt = db_session.execute.await_args_list[0].args[0]
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestGetBalance:
    """Tests for reading balances."""

    @pytest.mark.asyncio
    async def test_missing_row_is_zero(self, db_session):
        assert await LedgerService(db_session).get_balance(uuid4()) == Decimal("0")

    @pytest.mark.asyncio
    async def test_existing_balance(self, db_session, make_result):
        db_session.execute.return_value = make_result(scalar=Decimal("12.3400"))

        assert await LedgerService(db_session).get_balance(uuid4()) == Decimal("12.34")


class TestAdjustBalance:
    """Tests for the atomic upsert."""

    @pytest.mark.asyncio
    async def test_add_uses_upsert(self, db_session, make_result):
        db_session.execute.return_value = make_result(scalar=Decimal("5.00"))

        new_balance = await LedgerService(db_session).adjust_balance(
            uuid4(), Decimal("5.00"), BalanceOperation.ADD
        )

        assert new_balance == Decimal("5.00")
        sql = compiled_sql(db_session)
        assert "ON CONFLICT (user_id) DO UPDATE" in sql
        assert "RETURNING" in sql
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_subtract_may_go_negative(self, db_session, make_result):
        """Concurrent debits can overdraw; the upsert does not guard it."""
        db_session.execute.return_value = make_result(scalar=Decimal("-0.25"))

        new_balance = await LedgerService(db_session).adjust_balance(
            uuid4(), Decimal("0.50"), BalanceOperation.SUBTRACT
        )

        assert new_balance == Decimal("-0.25")

    @pytest.mark.asyncio
    async def test_failure_raises_persistence_error(self, db_session):
        db_session.execute.side_effect = SQLAlchemyError("deadlock detected")

        with pytest.raises(PersistenceError):
            await LedgerService(db_session).adjust_balance(
                uuid4(), Decimal("1"), BalanceOperation.ADD
            )

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()


class TestReserve:
    """Tests for the conditional decrement."""

    @pytest.mark.asyncio
    async def test_reserve_success(self, db_session, make_result):
        db_session.execute.return_value = make_result(scalar=Decimal("0.50"))

        assert await LedgerService(db_session).reserve(uuid4(), Decimal("0.50")) == Decimal("0.50")
        assert "balance >=" in compiled_sql(db_session)

    @pytest.mark.asyncio
    async def test_reserve_not_covered(self, db_session):
        assert await LedgerService(db_session).reserve(uuid4(), Decimal("0.50")) is None

    @pytest.mark.asyncio
    async def test_reserve_failure_raises(self, db_session):
        db_session.execute.side_effect = SQLAlchemyError("timeout")

        with pytest.raises(PersistenceError):
            await LedgerService(db_session).reserve(uuid4(), Decimal("0.50"))


class TestTransactionLog:
    """Tests for appending transactions."""

    @pytest.mark.asyncio
    async def test_append_transaction(self, db_session):
        user_id = uuid4()

        logged = await LedgerService(db_session).append_transaction(
            user_id, TransactionType.CREDIT, Decimal("10"), "Manual credit", "pay_1"
        )

        assert logged is True
        transaction = db_session.add.call_args.args[0]
        assert isinstance(transaction, Transaction)
        assert transaction.user_id == user_id
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.payment_id == "pay_1"

    @pytest.mark.asyncio
    async def test_append_failure_is_swallowed(self, db_session):
        """The balance change already happened, so a log failure only returns False."""
        db_session.commit.side_effect = SQLAlchemyError("disk full")

        logged = await LedgerService(db_session).append_transaction(
            uuid4(), TransactionType.DEBIT, Decimal("0.5"), "Image generation (512x512)", None
        )

        assert logged is False
        db_session.rollback.assert_awaited_once()


class TestCharge:
    """Tests for post-generation debits."""

    @pytest.mark.asyncio
    async def test_charge_debits_and_logs(self, db_session, make_result):
        db_session.execute.return_value = make_result(scalar=Decimal("0.50"))
        generation_id = uuid4()

        result = await LedgerService(db_session).charge(
            uuid4(), Decimal("0.50"), "Image generation (1024x1024)", generation_id
        )

        assert result.success is True
        assert result.new_balance == Decimal("0.50")
        assert result.transaction_logged is True
        transaction = db_session.add.call_args.args[0]
        assert transaction.type == TransactionType.DEBIT
        assert transaction.amount == Decimal("0.50")
        assert transaction.payment_id == str(generation_id)

    @pytest.mark.asyncio
    async def test_charge_failure_is_reported_not_raised(self, db_session):
        db_session.execute.side_effect = SQLAlchemyError("connection lost")

        result = await LedgerService(db_session).charge(uuid4(), Decimal("0.50"), "x")

        assert result.success is False
        assert result.new_balance is None
        assert "Failed to update balance" in result.error
        db_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_charge_succeeds_when_log_fails(self, db_session, make_result):
        db_session.execute.return_value = make_result(scalar=Decimal("0.50"))
        # First commit is the balance upsert, second is the log row
        db_session.commit.side_effect = [None, SQLAlchemyError("log failed")]

        result = await LedgerService(db_session).charge(uuid4(), Decimal("0.50"), "x")

        assert result.success is True
        assert result.transaction_logged is False


class TestCreditAndHistory:
    """Tests for credits and transaction listing."""

    @pytest.mark.asyncio
    async def test_credit(self, db_session, make_result):
        db_session.execute.return_value = make_result(scalar=Decimal("25.00"))

        new_balance = await LedgerService(db_session).credit(
            uuid4(), Decimal("25.00"), "Top up", payment_id="pay_2"
        )

        assert new_balance == Decimal("25.00")
        assert db_session.add.call_args.args[0].type == TransactionType.CREDIT

    @pytest.mark.asyncio
    async def test_list_transactions(self, db_session, make_result):
        user_id = uuid4()
        row = MagicMock(spec=Transaction)
        row.id = uuid4()
        row.user_id = user_id
        row.type = TransactionType.DEBIT
        row.amount = Decimal("0.50")
        row.description = "Image generation (1024x1024)"
        row.payment_id = None
        row.status = TransactionStatus.COMPLETED
        row.created_at = datetime(2026, 10, 1, tzinfo=UTC)
        db_session.execute.return_value = make_result(scalars=[row])

        transactions = await LedgerService(db_session).list_transactions(user_id, limit=10)

        assert len(transactions) == 1
        assert transactions[0].transaction_id == row.id
        assert transactions[0].amount == Decimal("0.50")
