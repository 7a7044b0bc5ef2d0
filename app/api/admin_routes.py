"""
Admin API routes for pricing, credits and the overview dashboard.

Price tables are public to read. Changing them, granting credits and reading
the dashboard require a session user listed in ADMIN_EMAILS.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import require_admin
from app.db.session import get_read_db, get_write_db
from app.exceptions import PersistenceError, ResourceNotFoundError
from app.models.api import (
    AdminMetricsResponse,
    CreditGrantRequest,
    CreditGrantResponse,
    GenerationCounts,
    ImagePriceItem,
    ImagePricingResponse,
    ImagePricingUpdateRequest,
    SpeechPriceItem,
    SpeechPricingResponse,
    SpeechPricingUpdateRequest,
    SuccessResponse,
)
from app.models.domain import CallerIdentity, GenerationTally
from app.services.dashboard import DashboardService
from app.services.ledger import LedgerService
from app.services.pricing import PricingService

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])
pricing_router = APIRouter(prefix="/api", tags=["pricing"])


# ============================================================================
# Pricing
# ============================================================================


@pricing_router.get("/pricing", response_model=ImagePricingResponse)
async def get_image_pricing(db: AsyncSession = Depends(get_read_db)) -> ImagePricingResponse:
    """Image prices by size."""
    rows = await PricingService(db).list_image_prices()
    return ImagePricingResponse(
        pricing=[
            ImagePriceItem(size_key=row.size_key, price=row.price, description=row.description)
            for row in rows
        ]
    )


@pricing_router.post("/pricing", response_model=SuccessResponse)
async def update_image_pricing(
    body: ImagePricingUpdateRequest,
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> SuccessResponse:
    """
    Update image prices.

    Only existing sizes can be repriced. Takes effect for the next admission;
    records already created keep their cost.
    """
    updates = [(item.size_key, item.price) for item in body.pricing]
    try:
        await PricingService(db).update_image_prices(updates)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    logger.info("admin_image_pricing_updated", admin_email=admin.email, sizes=len(updates))
    return SuccessResponse(success=True, message="Pricing updated successfully")


@pricing_router.get("/tts/pricing", response_model=SpeechPricingResponse)
async def get_speech_pricing(db: AsyncSession = Depends(get_read_db)) -> SpeechPricingResponse:
    """The per-word speech rate."""
    rows = await PricingService(db).list_speech_prices()
    return SpeechPricingResponse(
        pricing=[
            SpeechPriceItem(id=row.id, price=row.price, description=row.description)
            for row in rows
        ]
    )


@pricing_router.post("/tts/pricing", response_model=SuccessResponse)
async def update_speech_pricing(
    body: SpeechPricingUpdateRequest,
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> SuccessResponse:
    """Update the per-word speech rate."""
    updates = [(item.id, item.price) for item in body.pricing]
    try:
        await PricingService(db).update_speech_prices(updates)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    logger.info("admin_speech_pricing_updated", admin_email=admin.email)
    return SuccessResponse(success=True, message="TTS pricing updated successfully")


# ============================================================================
# Credits
# ============================================================================


@router.post("/balances/{user_id}/credits", response_model=CreditGrantResponse)
async def grant_credit(
    user_id: UUID,
    body: CreditGrantRequest,
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CreditGrantResponse:
    """Credit a user's balance by hand."""
    try:
        new_balance = await LedgerService(db).credit(
            user_id, body.amount, body.description, payment_id=body.payment_id
        )
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc

    logger.info(
        "admin_credit_granted",
        admin_email=admin.email,
        user_id=str(user_id),
        amount=str(body.amount),
    )
    return CreditGrantResponse(user_id=user_id, new_balance=new_balance)


# ============================================================================
# Dashboard
# ============================================================================


def _counts(tally: GenerationTally) -> GenerationCounts:
    return GenerationCounts(
        total=tally.total,
        generating=tally.generating,
        completed=tally.completed,
        failed=tally.failed,
    )


@router.get("/metrics", response_model=AdminMetricsResponse)
async def get_admin_metrics(
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> AdminMetricsResponse:
    """User, generation and revenue counters for the admin dashboard."""
    stats = await DashboardService(db).overview()

    logger.info("admin_metrics_viewed", admin_email=admin.email)

    return AdminMetricsResponse(
        total_users=stats.total_users,
        recent_users=stats.recent_users,
        active_users=stats.active_users,
        image_generations=_counts(stats.image_generations),
        speech_generations=_counts(stats.speech_generations),
        total_revenue=stats.total_revenue,
        revenue_last_30d=stats.revenue_last_30d,
        total_credited=stats.total_credited,
        total_balance=stats.total_balance,
        active_api_tokens=stats.active_api_tokens,
    )
