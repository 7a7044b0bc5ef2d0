"""
Dashboard Service - Aggregate counters for the admin overview.

Users live in the hosted identity provider, so user counts are derived from
the ledger: every user who was ever credited or charged has a balance row.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import case, func, or_, select, union
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import ApiToken, ImageGeneration, Transaction, TTSGeneration, UserBalance
from app.models.api import GenerationStatus, TransactionStatus, TransactionType
from app.models.domain import DashboardStats, GenerationTally

logger = get_logger(__name__)

RECENT_WINDOW = timedelta(days=30)


class DashboardService:
    """Read-only aggregates over balances, transactions and generations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _sum_transactions(
        self, type_: TransactionType, since: datetime | None = None
    ) -> Decimal:
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.type == type_,
            Transaction.status == TransactionStatus.COMPLETED,
        )
        if since is not None:
            stmt = stmt.where(Transaction.created_at >= since)
        result = await self.session.execute(stmt)
        return Decimal(result.scalar_one())

    async def _tally(self, model: type[ImageGeneration] | type[TTSGeneration]) -> GenerationTally:
        stmt = select(
            func.count(model.id),
            func.coalesce(func.sum(case((model.status == GenerationStatus.GENERATING, 1), else_=0)), 0),
            func.coalesce(func.sum(case((model.status == GenerationStatus.COMPLETED, 1), else_=0)), 0),
            func.coalesce(func.sum(case((model.status == GenerationStatus.FAILED, 1), else_=0)), 0),
        )
        result = await self.session.execute(stmt)
        total, generating, completed, failed = result.one()
        return GenerationTally(
            total=int(total),
            generating=int(generating),
            completed=int(completed),
            failed=int(failed),
        )

    async def overview(self, now: datetime | None = None) -> DashboardStats:
        """Compute the admin overview."""
        now = now or datetime.now(UTC)
        since = now - RECENT_WINDOW

        total_users_result = await self.session.execute(select(func.count(UserBalance.id)))
        total_users = total_users_result.scalar_one()

        recent_users_result = await self.session.execute(
            select(func.count(UserBalance.id)).where(UserBalance.created_at >= since)
        )
        recent_users = recent_users_result.scalar_one()

        # Users who generated anything in the window
        active_ids = union(
            select(ImageGeneration.user_id).where(ImageGeneration.created_at >= since),
            select(TTSGeneration.user_id).where(TTSGeneration.created_at >= since),
        ).subquery()
        active_users_result = await self.session.execute(
            select(func.count()).select_from(active_ids)
        )
        active_users = active_users_result.scalar_one()

        total_balance_result = await self.session.execute(
            select(func.coalesce(func.sum(UserBalance.balance), 0))
        )
        total_balance = Decimal(total_balance_result.scalar_one())

        active_tokens_result = await self.session.execute(
            select(func.count(ApiToken.id)).where(
                ApiToken.is_active.is_(True),
                or_(ApiToken.expires_at.is_(None), ApiToken.expires_at > now),
            )
        )
        active_api_tokens = active_tokens_result.scalar_one()

        stats = DashboardStats(
            total_users=int(total_users),
            recent_users=int(recent_users),
            active_users=int(active_users),
            image_generations=await self._tally(ImageGeneration),
            speech_generations=await self._tally(TTSGeneration),
            total_revenue=await self._sum_transactions(TransactionType.DEBIT),
            revenue_last_30d=await self._sum_transactions(TransactionType.DEBIT, since),
            total_credited=await self._sum_transactions(TransactionType.CREDIT),
            total_balance=total_balance,
            active_api_tokens=int(active_api_tokens),
        )
        logger.info("admin_dashboard_computed", total_users=stats.total_users)
        return stats
