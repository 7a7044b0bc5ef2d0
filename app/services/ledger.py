"""
Balance Ledger - Per-user balances and the append-only transaction log.

Balances only change through the atomic upsert in ``adjust_balance`` (or
the conditional decrement in ``reserve``). The transaction row written after
a balance change is best-effort: the balance change is already committed and
is never rolled back because the audit row could not be written.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Transaction, UserBalance, utc_now
from app.exceptions import PersistenceError
from app.models.api import BalanceOperation, TransactionStatus, TransactionType
from app.models.domain import ChargeResult, TransactionData
from app.observability import metrics

logger = get_logger(__name__)


class LedgerService:
    """
    Balance ledger bound to the service's own database session.

    The ledger is written on the user's behalf by backend logic, never by
    the user's session, so callers pass the owner id explicitly.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_balance(self, user_id: UUID) -> Decimal:
        """Current balance; users without a balance row have zero."""
        result = await self.session.execute(
            select(UserBalance.balance).where(UserBalance.user_id == user_id)
        )
        balance = result.scalar_one_or_none()
        return Decimal(balance) if balance is not None else Decimal("0")

    async def adjust_balance(
        self, user_id: UUID, amount: Decimal, operation: BalanceOperation
    ) -> Decimal:
        """
        Atomically add to or subtract from a balance, creating the row if needed.

        Returns:
            The balance after the adjustment

        Raises:
            PersistenceError: The upsert failed (nothing was changed)
        """
        signed = amount if operation == BalanceOperation.ADD else -amount

        stmt = insert(UserBalance).values(user_id=user_id, balance=signed)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserBalance.user_id],
            set_={
                "balance": UserBalance.balance + signed,
                "updated_at": utc_now(),
            },
        ).returning(UserBalance.balance)

        try:
            result = await self.session.execute(stmt)
            new_balance = result.scalar_one()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "balance_adjust_failed",
                user_id=str(user_id),
                operation=operation.value,
                amount=str(amount),
                error=str(e),
            )
            raise PersistenceError(f"Failed to update balance: {e}") from e

        logger.info(
            "balance_adjusted",
            user_id=str(user_id),
            operation=operation.value,
            amount=str(amount),
            new_balance=str(new_balance),
        )
        return Decimal(new_balance)

    async def reserve(self, user_id: UUID, amount: Decimal) -> Decimal | None:
        """
        Conditionally decrement a balance in one statement.

        Returns:
            The balance after the decrement, or None if it would not cover amount
        """
        stmt = (
            update(UserBalance)
            .where(UserBalance.user_id == user_id, UserBalance.balance >= amount)
            .values(balance=UserBalance.balance - amount, updated_at=utc_now())
            .returning(UserBalance.balance)
        )
        try:
            result = await self.session.execute(stmt)
            new_balance = result.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Failed to reserve balance: {e}") from e

        if new_balance is None:
            return None

        logger.info(
            "balance_reserved",
            user_id=str(user_id),
            amount=str(amount),
            new_balance=str(new_balance),
        )
        return Decimal(new_balance)

    async def release(self, user_id: UUID, amount: Decimal) -> Decimal:
        """Return a reservation to the balance without logging a transaction."""
        new_balance = await self.adjust_balance(user_id, amount, BalanceOperation.ADD)
        logger.info("balance_reservation_released", user_id=str(user_id), amount=str(amount))
        return new_balance

    async def append_transaction(
        self,
        user_id: UUID,
        type_: TransactionType,
        amount: Decimal,
        description: str,
        payment_id: str | None,
    ) -> bool:
        """
        Append a completed transaction row.

        Failures are logged and swallowed; the balance change this row
        documents has already been committed.

        Returns:
            True if the row was written
        """
        transaction = Transaction(
            user_id=user_id,
            type=type_,
            amount=amount,
            description=description,
            payment_id=payment_id,
            status=TransactionStatus.COMPLETED,
        )
        self.session.add(transaction)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            metrics.transaction_log_failures_total.inc()
            logger.error(
                "ledger_transaction_log_failed",
                user_id=str(user_id),
                type=type_.value,
                amount=str(amount),
                payment_id=payment_id,
                error=str(e),
            )
            return False
        return True

    async def charge(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        generation_id: UUID | None = None,
    ) -> ChargeResult:
        """
        Debit a user and log the debit.

        Never raises for database errors: a failed debit is reported in the
        result so the caller can keep the generation's completed state.
        """
        payment_id = str(generation_id) if generation_id else None
        try:
            new_balance = await self.adjust_balance(user_id, amount, BalanceOperation.SUBTRACT)
        except PersistenceError as e:
            return ChargeResult(
                success=False, new_balance=None, transaction_logged=False, error=e.message
            )

        logged = await self.append_transaction(
            user_id, TransactionType.DEBIT, amount, description, payment_id
        )
        return ChargeResult(success=True, new_balance=new_balance, transaction_logged=logged)

    async def credit(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        payment_id: str | None = None,
    ) -> Decimal:
        """
        Credit a user and log the credit.

        Raises:
            PersistenceError: The balance could not be updated
        """
        new_balance = await self.adjust_balance(user_id, amount, BalanceOperation.ADD)
        await self.append_transaction(
            user_id, TransactionType.CREDIT, amount, description, payment_id
        )
        return new_balance

    async def list_transactions(self, user_id: UUID, limit: int = 100) -> list[TransactionData]:
        """The user's transactions, newest first."""
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return [
            TransactionData(
                transaction_id=row.id,
                user_id=row.user_id,
                type=row.type,
                amount=row.amount,
                description=row.description,
                payment_id=row.payment_id,
                status=row.status,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]
